"""Shared constants for repflow."""

DEFAULT_MODEL = "gpt-5.2"

MEMORY_CACHE_SIZE = 500

# Seconds each kind of generated artifact stays fresh.
DEFAULT_CACHE_TTLS = {
    "workout_plan": 3600,
    "workout_generation": 3600,
    "exercise_recommendations": 1800,
    "coaching_response": 7200,
    "milestone_generation": 86400,
    "context_analysis": 3600,
    "member_context": 30,
    "member_name": 300,
    "member_embedding": 604800,
    "workout_analysis": 86400,
    "progress_report": 604800,
}

CACHE_KEY_PREFIX = "ai"

# USD per million tokens: (input, output, cached input)
DEFAULT_MODEL_PRICES = {
    "gpt-5.2": (1.75, 14.0, 0.175),
    "gpt-5.2-pro": (5.0, 40.0, 0.5),
    "gpt-5.2-chat-latest": (0.5, 2.0, 0.05),
}

QUOTA_PERIOD_DAYS = 30

CRON_EVENT_PREFIX = "cron/"

MAX_SENT_ERRORS = 100
