"""Conversation state machine for the growth consultation chat."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Awaitable, Callable, Dict, Optional

from .age import age_in_months, is_supported_age
from .errors import GrowthError, InvalidInputError, LookupFailedError, NotFoundError
from .openai_client import LLMUnavailableError, draft_reply, extract_info
from .percentile import ReferenceLookup, calculate_percentile_async
from .prompts import (
    AFFIRMATIVE_PHRASES,
    ASK_BIRTH_DATE_MESSAGE,
    ASSISTANT_LABEL,
    DECLINED_MESSAGE,
    END_PHRASES,
    ENDED_MESSAGE,
    FALLBACK_QUESTION,
    FAREWELL_MESSAGE,
    FIELD_LABELS,
    GREETING_MESSAGE,
    LOOKUP_RETRY_MESSAGE,
    NEGATIVE_PHRASES,
    REPORT_FAILED_MESSAGE,
    RESET_PHRASES,
    UNSUPPORTED_AGE_MESSAGE,
    USER_LABEL,
    build_extraction_messages,
    build_report_prompt,
    contains_any,
    format_report,
    no_data_message,
)
from .schemas import ChatTurn, CollectedInfo, ConversationSession, ConversationState, MeasurementType, Sex
from .sessions import SessionStore

logger = logging.getLogger(__name__)

MAX_HISTORY_TURNS = 30

_MEASUREMENT_LABELS = {
    MeasurementType.HEIGHT.value: "키",
    MeasurementType.WEIGHT.value: "몸무게",
}


@dataclass
class ConversationContext:
    store: SessionStore
    reference: ReferenceLookup
    today: Callable[[], date] = field(default=date.today)
    narrate_reports: bool = False


Handler = Callable[[ConversationContext, str, str, ConversationSession], Awaitable[str]]


def _with_turns(session: ConversationSession, *turns: ChatTurn) -> list[ChatTurn]:
    return [*session.history, *turns][-MAX_HISTORY_TURNS:]


def describe_missing(info: CollectedInfo) -> str:
    return ", ".join(FIELD_LABELS[name] for name in info.missing_fields())


async def handle_greeting(ctx: ConversationContext, user_key: str, utterance: str, session: ConversationSession) -> str:
    await ctx.store.set(
        user_key,
        ConversationSession(
            state=ConversationState.COLLECTING_INIT,
            history=[ChatTurn(role=USER_LABEL, content=utterance)],
        ),
    )
    return GREETING_MESSAGE


async def handle_collecting_init(
    ctx: ConversationContext, user_key: str, utterance: str, session: ConversationSession
) -> str:
    agreed = contains_any(utterance, AFFIRMATIVE_PHRASES) and not contains_any(utterance, NEGATIVE_PHRASES)
    if agreed:
        history = _with_turns(
            session,
            ChatTurn(role=USER_LABEL, content=utterance),
            ChatTurn(role=ASSISTANT_LABEL, content=ASK_BIRTH_DATE_MESSAGE),
        )
        await ctx.store.set(
            user_key,
            ConversationSession(state=ConversationState.COLLECTING, history=history),
        )
        return ASK_BIRTH_DATE_MESSAGE
    await ctx.store.delete(user_key)
    return DECLINED_MESSAGE


async def handle_collecting(ctx: ConversationContext, user_key: str, utterance: str, session: ConversationSession) -> str:
    if contains_any(utterance, END_PHRASES):
        await ctx.store.delete(user_key)
        return ENDED_MESSAGE

    messages = build_extraction_messages(session.history, session.collected_info, utterance)
    user_turn = ChatTurn(role=USER_LABEL, content=utterance)
    ai_response: Dict[str, Any] = await asyncio.to_thread(extract_info, messages)
    updated = session.collected_info.merged(ai_response.get("extracted_info") or {})
    still_missing = updated.missing_fields()
    logger.info(
        "collected growth fields",
        extra={"user_key": user_key, "missing": still_missing},
    )

    if not still_missing:
        next_session = ConversationSession(
            state=ConversationState.GENERATING_REPORT,
            history=_with_turns(session, user_turn),
            collected_info=updated,
        )
        await ctx.store.set(user_key, next_session)
        return await handle_generating_report(ctx, user_key, utterance, next_session)

    next_question = ai_response.get("next_question") or f"{FALLBACK_QUESTION} ({describe_missing(updated)})"
    history = _with_turns(session, user_turn, ChatTurn(role=ASSISTANT_LABEL, content=next_question))
    await ctx.store.set(
        user_key,
        ConversationSession(state=ConversationState.COLLECTING, history=history, collected_info=updated),
    )
    return next_question


async def build_report(ctx: ConversationContext, info: CollectedInfo) -> Dict[str, Any]:
    """Age plus height/weight percentiles for a fully collected profile."""
    sex = Sex.parse(info.gender or "")
    age_months = age_in_months(info.birth_date or "", ctx.today())
    if not is_supported_age(age_months):
        raise InvalidInputError(f"age {age_months} months is outside the supported range", field="birth_date")
    results = await asyncio.gather(
        calculate_percentile_async(ctx.reference, sex, MeasurementType.HEIGHT, age_months, info.height),
        calculate_percentile_async(ctx.reference, sex, MeasurementType.WEIGHT, age_months, info.weight),
        return_exceptions=True,
    )
    for outcome in results:
        if isinstance(outcome, BaseException):
            raise outcome
    height, weight = results
    return {
        "sex": sex.value,
        "age_months": age_months,
        "height": info.height,
        "weight": info.weight,
        "height_percentile": height.percentile,
        "height_top": height.top_percent,
        "weight_percentile": weight.percentile,
        "weight_top": weight.top_percent,
    }


async def _narrate(report: Dict[str, Any]) -> Optional[str]:
    try:
        return await asyncio.to_thread(draft_reply, build_report_prompt(report))
    except LLMUnavailableError as exc:
        logger.warning("report narration unavailable, using template", extra={"error": str(exc)})
        return None


async def handle_generating_report(
    ctx: ConversationContext, user_key: str, utterance: str, session: ConversationSession
) -> str:
    info = session.collected_info
    try:
        report = await build_report(ctx, info)
    except NotFoundError as exc:
        await ctx.store.delete(user_key)
        label = _MEASUREMENT_LABELS.get(exc.measurement_type, exc.measurement_type)
        return f"죄송합니다. 분석 중 오류가 발생했습니다. {no_data_message(exc.age_months, label)}"
    except LookupFailedError as exc:
        # Keep the collected profile so the next message retries the lookup.
        logger.warning("reference lookup failed", extra={"user_key": user_key, "error": str(exc)})
        return LOOKUP_RETRY_MESSAGE
    except InvalidInputError as exc:
        if exc.field == "birth_date":
            await ctx.store.set(
                user_key,
                ConversationSession(
                    state=ConversationState.COLLECTING,
                    history=session.history,
                    collected_info=info.model_copy(update={"birth_date": None}),
                ),
            )
            return UNSUPPORTED_AGE_MESSAGE
        await ctx.store.delete(user_key)
        logger.info("report input rejected", extra={"user_key": user_key, "field": exc.field, "error": str(exc)})
        return REPORT_FAILED_MESSAGE
    except GrowthError as exc:
        logger.exception("report generation failed", exc_info=exc)
        await ctx.store.delete(user_key)
        return REPORT_FAILED_MESSAGE

    text = format_report(report)
    if ctx.narrate_reports:
        narrative = await _narrate(report)
        if narrative:
            text = narrative
    await ctx.store.set(
        user_key,
        ConversationSession(
            state=ConversationState.POST_ANALYSIS,
            history=session.history,
            collected_info=info,
        ),
    )
    return text


async def handle_post_analysis(
    ctx: ConversationContext, user_key: str, utterance: str, session: ConversationSession
) -> str:
    if contains_any(utterance, RESET_PHRASES):
        return await handle_greeting(ctx, user_key, "다시 상담 시작할래", session)
    await ctx.store.delete(user_key)
    return FAREWELL_MESSAGE


STATE_HANDLERS: Dict[ConversationState, Handler] = {
    ConversationState.GREETING: handle_greeting,
    ConversationState.COLLECTING_INIT: handle_collecting_init,
    ConversationState.COLLECTING: handle_collecting,
    ConversationState.GENERATING_REPORT: handle_generating_report,
    ConversationState.POST_ANALYSIS: handle_post_analysis,
}


async def handle_utterance(ctx: ConversationContext, user_key: str, utterance: str) -> str:
    """Route one chat message to the handler for the user's current state."""
    session = await ctx.store.get(user_key) or ConversationSession()
    if session.state in {ConversationState.COLLECTING, ConversationState.GENERATING_REPORT} and contains_any(
        utterance, RESET_PHRASES
    ):
        return await handle_greeting(ctx, user_key, utterance, session)
    handler = STATE_HANDLERS.get(session.state, handle_greeting)
    logger.info("chat turn", extra={"user_key": user_key, "state": session.state.value})
    return await handler(ctx, user_key, utterance, session)
