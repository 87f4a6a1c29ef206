"""
AI Coach Service

Orchestrates one coaching request end to end:

    context snapshot -> recent conversation -> provider -> (plan parse / write) -> persistence

Features:
- Context injection from the athlete's actual training data
- Short rolling conversation memory (last COACH_HISTORY_TURNS turns)
- Daily dashboard insight (one-shot, not persisted)
- Structured plan generation, optionally written to the training calendar

Quota is charged by the caller (the router's quota dependency) before any of
this runs and is never refunded, even when generation fails.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from core.config import Settings, settings as default_settings
from services.calendar_service import CalendarService
from services.coach_context import ContextBuilder, ContextSnapshot
from services.coach_conversations import DEFAULT_HISTORY_LIMIT, ConversationStore
from services.coach_plan import PlanResponse, PlanWriter, parse_plan
from services.coach_providers import (
    ChatTurn,
    CoachProvider,
    Role,
    UpstreamUnreachableError,
    select_provider,
)
from services.training_data import TrainingDataStore

logger = logging.getLogger(__name__)

DEFAULT_PLAN_DAYS = 7
MAX_PLAN_DAYS = 14
MAX_HISTORY_LIMIT = 500

INSIGHT_REQUEST = "Give me a brief coaching insight for my dashboard today."


@dataclass
class PlanOutcome:
    """A generated plan plus what happened when (if) it was applied to the calendar."""
    plan: PlanResponse
    confirmed: bool = False
    written: List[date] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)


def plan_dates(days: int, now: Optional[datetime] = None) -> List[date]:
    """Tomorrow through tomorrow + days - 1 (UTC)."""
    today = (now or datetime.now(timezone.utc)).astimezone(timezone.utc).date()
    return [today + timedelta(days=i + 1) for i in range(days)]


def normalize_plan_days(days: Optional[int]) -> int:
    if days is None or days <= 0 or days > MAX_PLAN_DAYS:
        return DEFAULT_PLAN_DAYS
    return days


class AICoach:
    """
    Running coach backed by a single text-generation provider.

    The provider is chosen once per coach instance (Gemini when configured,
    else Claude). There is no failover between backends mid-request.
    """

    CHAT_SYSTEM_PROMPT = """You are Korsana, an experienced running coach with expertise in marathon and distance running training. You provide evidence-based, personalized advice to runners.

Your coaching philosophy:
- Hybrid approach: Combine established training principles (periodization, 80/20 rule, progressive overload) with personalized recommendations based on individual data
- Never provide generic linear plans - always adapt to the runner's specific situation
- Focus on the "why" behind recommendations, not just the "what"
- Acknowledge limitations and suggest professional medical consultation when appropriate
- Be direct, supportive, and data-informed

Current runner's context:
{context}

Provide concise, actionable advice. Keep responses to 2-3 paragraphs unless the runner asks for more detail."""

    INSIGHT_SYSTEM_PROMPT = """You are Korsana, an experienced running coach. Generate a brief, actionable daily coaching insight for the runner's dashboard.

Current runner's context:
{context}

Rules:
- Keep it to 1-2 sentences max
- Be specific and data-informed when possible
- Focus on what they should do today or this week
- Use a direct, supportive tone
- Never be generic. Reference their actual training data or goal
- If they have no data, encourage them to get started"""

    PLAN_SYSTEM_PROMPT = """You are Korsana, an expert running coach. Generate a structured training plan.

Runner's context:
{context}

IMPORTANT: You MUST respond with ONLY a valid JSON object in this exact format, no markdown, no extra text:
{{
  "plan": [
    {{
      "date": "YYYY-MM-DD",
      "workout_type": "easy|tempo|interval|long|recovery|rest|race|cross_train",
      "title": "Workout Title",
      "description": "Brief description of the workout",
      "distance_km": 8.0,
      "pace_per_km": 360
    }}
  ],
  "summary": "Brief 1-2 sentence summary of the plan"
}}

Rules:
- Generate exactly one entry per date listed below
- Use appropriate workout_type values
- distance_km should be 0 for rest days
- pace_per_km is in seconds (e.g., 360 = 6:00/km)
- Balance easy/hard days (80/20 rule)
- Include at least 1 rest day per week
- Adapt to the runner's current fitness level and goal

Dates to plan:
{dates}"""

    def __init__(self, db: Session, provider: Optional[CoachProvider] = None, config: Optional[Settings] = None):
        self.db = db
        self.config = config or default_settings
        self._provider = provider

        self.data_store = TrainingDataStore(db)
        self.calendar = CalendarService(db)
        self.context_builder = ContextBuilder(self.data_store, self.calendar)
        self.conversations = ConversationStore(db)
        self.plan_writer = PlanWriter(self.calendar)

    @property
    def provider(self) -> CoachProvider:
        # Raises ProviderNotConfiguredError when no backend key is set
        if self._provider is None:
            self._provider = select_provider(self.config)
        return self._provider

    # ------------------------------------------------------------------
    # Context
    # ------------------------------------------------------------------

    def build_snapshot(self, athlete_id: UUID, now: Optional[datetime] = None) -> ContextSnapshot:
        return self.context_builder.build(athlete_id, now=now)

    def build_context(self, athlete_id: UUID, now: Optional[datetime] = None) -> str:
        return self.build_snapshot(athlete_id, now=now).render()

    def preview_context(self, athlete_id: UUID, now: Optional[datetime] = None) -> Dict[str, Any]:
        """What the coach would see right now, without calling a provider."""
        snapshot = self.build_snapshot(athlete_id, now=now)
        return {"context": snapshot.render(), "sections": snapshot.names}

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    async def _generate(self, turns: List[ChatTurn], system_prompt: str) -> str:
        """
        Run the blocking provider call on a worker thread under the request deadline.

        On expiry the call is abandoned (its thread finishes on its own) and the
        caller sees UpstreamUnreachableError.
        """
        provider = self.provider
        deadline = self.config.COACH_REQUEST_DEADLINE_S
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(provider.generate, turns, system_prompt, self.config.COACH_MAX_OUTPUT_TOKENS),
                timeout=deadline,
            )
        except asyncio.TimeoutError as e:
            logger.error(f"Coach provider {provider.name} exceeded request deadline ({deadline}s)")
            raise UpstreamUnreachableError(
                f"AI service did not respond within {deadline} seconds", provider=provider.name
            ) from e

    def _history_turns(self, athlete_id: UUID) -> List[ChatTurn]:
        try:
            rows = self.conversations.recent(athlete_id, self.config.COACH_HISTORY_TURNS)
        except Exception as e:
            logger.warning(f"Failed to load coach history for {athlete_id}: {e}")
            self.db.rollback()
            return []
        return [ChatTurn(role=Role(row.role), content=row.content) for row in rows]

    async def send_message(self, athlete_id: UUID, message: str, now: Optional[datetime] = None) -> str:
        """
        Answer one chat message with training context and recent history.

        The exchange is persisted only after the provider answers.
        """
        context = self.build_context(athlete_id, now=now)
        turns = self._history_turns(athlete_id)
        turns.append(ChatTurn(role=Role.USER, content=message))

        response = await self._generate(turns, self.CHAT_SYSTEM_PROMPT.format(context=context))
        logger.info(
            f"Coach reply for {athlete_id} ({len(response)} chars)",
            extra={"extra_fields": {"athlete_id": str(athlete_id), "provider": self.provider.name, "turns": len(turns)}},
        )

        try:
            self.conversations.append_exchange(athlete_id, message, response, now=now)
        except Exception as e:
            # The athlete still gets the answer; only the memory of it is lost
            logger.warning(f"Failed to save coach chat messages for {athlete_id}: {e}")

        return response

    async def generate_insight(self, athlete_id: UUID, now: Optional[datetime] = None) -> str:
        context = self.build_context(athlete_id, now=now)
        turns = [ChatTurn(role=Role.USER, content=INSIGHT_REQUEST)]
        return await self._generate(turns, self.INSIGHT_SYSTEM_PROMPT.format(context=context))

    async def generate_plan(
        self,
        athlete_id: UUID,
        days: Optional[int] = DEFAULT_PLAN_DAYS,
        confirm: bool = False,
        now: Optional[datetime] = None,
    ) -> PlanOutcome:
        """
        Generate a plan for the next `days` days, starting tomorrow.

        Raises PlanParseError when the reply is not a valid plan, and
        PlanWriteError when `confirm` is set but nothing could be saved.
        """
        days = normalize_plan_days(days)
        context = self.build_context(athlete_id, now=now)
        date_list = "\n".join(f"- {d.isoformat()} ({d:%A})" for d in plan_dates(days, now))

        turns = [
            ChatTurn(
                role=Role.USER,
                content=f"Generate a {days}-day training plan for me starting tomorrow. Respond with ONLY the JSON.",
            )
        ]
        raw = await self._generate(turns, self.PLAN_SYSTEM_PROMPT.format(context=context, dates=date_list))
        plan = parse_plan(raw)

        outcome = PlanOutcome(plan=plan)
        if confirm:
            result = self.plan_writer.write_plan(athlete_id, plan.plan)
            outcome.confirmed = True
            outcome.written = result.written
            outcome.skipped = result.skipped
        return outcome

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def get_history(self, athlete_id: UUID, limit: int = DEFAULT_HISTORY_LIMIT) -> List[Dict[str, Any]]:
        """Stored conversation, oldest first."""
        if limit is None or limit <= 0:
            limit = DEFAULT_HISTORY_LIMIT
        limit = min(int(limit), MAX_HISTORY_LIMIT)

        rows = self.conversations.history(athlete_id, limit=limit)
        return [
            {
                "id": str(row.id),
                "role": row.role,
                "content": row.content,
                "created_at": row.created_at.isoformat() if row.created_at else None,
            }
            for row in rows
        ]


def get_ai_coach(db: Session) -> AICoach:
    """Factory function for dependency injection."""
    return AICoach(db)
