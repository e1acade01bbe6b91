"""QuestWeave: narrative turn pipeline for an AI-narrated wellness RPG."""

__version__ = "0.1.0"
