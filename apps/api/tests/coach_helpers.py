"""
Shared test doubles for coach tests.
"""
import json
import time
from datetime import date, timedelta

from services.coach_providers import CoachProvider


class ScriptedProvider(CoachProvider):
    """Returns canned replies (or raises) and records every call."""

    name = "scripted"

    def __init__(self, replies=None, error=None, delay_s=0.0):
        super().__init__(model="scripted-1", timeout_s=5)
        self.replies = list(replies or ["Nice work."])
        self.error = error
        self.delay_s = delay_s
        self.calls = []

    def generate(self, turns, system_prompt, max_output_tokens):
        self.calls.append({"turns": list(turns), "system_prompt": system_prompt, "max_output_tokens": max_output_tokens})
        if self.delay_s:
            time.sleep(self.delay_s)
        if self.error:
            raise self.error
        # Last reply repeats once the script runs out
        return self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]


def plan_json(days, start=date(2026, 3, 15)):
    return json.dumps({
        "plan": [
            {
                "date": (start + timedelta(days=i)).isoformat(),
                "workout_type": "easy",
                "title": f"Easy {i}",
                "description": "",
                "distance_km": 6,
                "pace_per_km": 360,
            }
            for i in range(days)
        ],
        "summary": "Easy week.",
    })
