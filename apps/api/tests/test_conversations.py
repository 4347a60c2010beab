from __future__ import annotations

import asyncio
from typing import Any, Dict, List

import pytest

from growthbot import conversations
from growthbot.conversations import MAX_HISTORY_TURNS, ConversationContext, handle_utterance
from growthbot.errors import LookupFailedError
from growthbot.openai_client import LLMUnavailableError
from growthbot.prompts import (
    ASK_BIRTH_DATE_MESSAGE,
    DECLINED_MESSAGE,
    ENDED_MESSAGE,
    FALLBACK_QUESTION,
    FAREWELL_MESSAGE,
    GREETING_MESSAGE,
    LOOKUP_RETRY_MESSAGE,
    UNSUPPORTED_AGE_MESSAGE,
)
from growthbot.schemas import CollectedInfo, ConversationSession, ConversationState

from conftest import BIRTH_DATE_24_MONTHS

USER = "kakao-user-1"


def fake_extraction(monkeypatch: pytest.MonkeyPatch, *responses: Dict[str, Any]) -> List[List[Dict[str, str]]]:
    """Queue canned LLM extractions; returns the list of prompts the bot sent."""
    queue = list(responses)
    calls: List[List[Dict[str, str]]] = []

    def _extract(messages):
        calls.append(messages)
        return queue.pop(0)

    monkeypatch.setattr(conversations, "extract_info", _extract)
    return calls


def say(ctx: ConversationContext, utterance: str) -> str:
    return asyncio.run(handle_utterance(ctx, USER, utterance))


def current(ctx: ConversationContext) -> ConversationSession:
    return asyncio.run(ctx.store.get(USER))


def start_collecting(ctx: ConversationContext) -> None:
    assert say(ctx, "안녕하세요") == GREETING_MESSAGE
    assert say(ctx, "네 시작할게요") == ASK_BIRTH_DATE_MESSAGE


def test_greeting_then_consent(ctx: ConversationContext) -> None:
    assert say(ctx, "안녕하세요") == GREETING_MESSAGE
    assert current(ctx).state is ConversationState.COLLECTING_INIT
    assert say(ctx, "응") == ASK_BIRTH_DATE_MESSAGE
    session = current(ctx)
    assert session.state is ConversationState.COLLECTING
    assert session.history[-1].content == ASK_BIRTH_DATE_MESSAGE


def test_declining_ends_the_session(ctx: ConversationContext) -> None:
    say(ctx, "안녕하세요")
    assert say(ctx, "아니요 괜찮아요") == DECLINED_MESSAGE
    assert current(ctx) is None


def test_partial_answers_ask_the_next_question(ctx: ConversationContext, monkeypatch: pytest.MonkeyPatch) -> None:
    calls = fake_extraction(
        monkeypatch,
        {"extracted_info": {"birth_date": BIRTH_DATE_24_MONTHS, "gender": "남자"}, "next_question": "키는 몇 cm인가요?"},
        {"extracted_info": {"height": "87"}, "next_question": ""},
    )
    start_collecting(ctx)

    assert say(ctx, "2023년 5월 10일생 아들이에요") == "키는 몇 cm인가요?"
    assert current(ctx).collected_info == CollectedInfo(birth_date=BIRTH_DATE_24_MONTHS, gender="남자")

    reply = say(ctx, "87cm요")
    assert reply.startswith(FALLBACK_QUESTION)
    assert "몸무게" in reply
    assert current(ctx).collected_info.height == 87.0
    assert "부족한 정보: [height, weight]" in calls[1][-1]["content"]


def test_full_profile_produces_report(ctx: ConversationContext, monkeypatch: pytest.MonkeyPatch) -> None:
    fake_extraction(
        monkeypatch,
        {
            "extracted_info": {
                "birth_date": BIRTH_DATE_24_MONTHS,
                "gender": "남자",
                "height": 87.0,
                "weight": 12.1515,
            },
            "next_question": "",
        },
    )
    start_collecting(ctx)

    reply = say(ctx, "2023-05-10 남자 87cm 12.15kg")
    assert reply.startswith("📈 분석 결과입니다.")
    assert "만 24개월" in reply
    assert "백분위 50.0, 상위 50.0%" in reply
    assert current(ctx).state is ConversationState.POST_ANALYSIS


def test_report_can_be_narrated(ctx: ConversationContext, monkeypatch: pytest.MonkeyPatch) -> None:
    prompts = []
    monkeypatch.setattr(conversations, "draft_reply", lambda prompt: prompts.append(prompt) or "우리 아이는 평균이에요.")
    fake_extraction(
        monkeypatch,
        {"extracted_info": {"birth_date": BIRTH_DATE_24_MONTHS, "gender": "여자", "height": 85.7, "weight": 11.4775}},
    )
    ctx.narrate_reports = True
    start_collecting(ctx)

    assert say(ctx, "다 알려드릴게요") == "우리 아이는 평균이에요."
    assert "여자아이" in prompts[0]


def test_narration_failure_falls_back_to_template(ctx: ConversationContext, monkeypatch: pytest.MonkeyPatch) -> None:
    def _unavailable(prompt):
        raise LLMUnavailableError("no key")

    monkeypatch.setattr(conversations, "draft_reply", _unavailable)
    fake_extraction(
        monkeypatch,
        {"extracted_info": {"birth_date": BIRTH_DATE_24_MONTHS, "gender": "여자", "height": 85.7, "weight": 11.4775}},
    )
    ctx.narrate_reports = True
    start_collecting(ctx)

    assert say(ctx, "다 알려드릴게요").startswith("📈 분석 결과입니다.")


def test_missing_reference_row_apologises(ctx: ConversationContext, monkeypatch: pytest.MonkeyPatch) -> None:
    fake_extraction(
        monkeypatch,
        {"extracted_info": {"birth_date": "2024-04-10", "gender": "남자", "height": 80, "weight": 10}},
    )
    start_collecting(ctx)

    reply = say(ctx, "2024년 4월 10일생 남자 80cm 10kg")
    assert "13개월" in reply
    assert "키 데이터가 없습니다" in reply
    assert current(ctx) is None


def test_out_of_range_age_asks_for_birth_date_again(ctx: ConversationContext, monkeypatch: pytest.MonkeyPatch) -> None:
    fake_extraction(
        monkeypatch,
        {"extracted_info": {"birth_date": "2000-01-01", "gender": "남자", "height": 175, "weight": 70}},
    )
    start_collecting(ctx)

    assert say(ctx, "2000년생 남자 175cm 70kg") == UNSUPPORTED_AGE_MESSAGE
    session = current(ctx)
    assert session.state is ConversationState.COLLECTING
    assert session.collected_info.missing_fields() == ["birth_date"]


def test_lookup_failure_keeps_profile_for_retry(ctx: ConversationContext, monkeypatch: pytest.MonkeyPatch) -> None:
    class FlakyTable:
        def __init__(self, table) -> None:
            self.table = table
            self.fail = True

        async def get(self, sex, measurement_type, age_months):
            if self.fail:
                raise LookupFailedError("kv down")
            return self.table.get(sex, measurement_type, age_months)

    flaky = FlakyTable(ctx.reference)
    ctx.reference = flaky
    fake_extraction(
        monkeypatch,
        {"extracted_info": {"birth_date": BIRTH_DATE_24_MONTHS, "gender": "남자", "height": 87, "weight": 12.1515}},
    )
    start_collecting(ctx)

    assert say(ctx, "다 알려드릴게요") == LOOKUP_RETRY_MESSAGE
    assert current(ctx).state is ConversationState.GENERATING_REPORT

    flaky.fail = False
    assert say(ctx, "다시 해주세요").startswith("📈 분석 결과입니다.")


def test_end_phrase_while_collecting(ctx: ConversationContext) -> None:
    start_collecting(ctx)
    assert say(ctx, "종료") == ENDED_MESSAGE
    assert current(ctx) is None


def test_reset_phrase_restarts(ctx: ConversationContext) -> None:
    start_collecting(ctx)
    assert say(ctx, "처음부터 다시") == GREETING_MESSAGE
    assert current(ctx).state is ConversationState.COLLECTING_INIT


def test_post_analysis_reset_and_farewell(ctx: ConversationContext) -> None:
    asyncio.run(ctx.store.set(USER, ConversationSession(state=ConversationState.POST_ANALYSIS)))
    assert say(ctx, "초기화") == GREETING_MESSAGE

    asyncio.run(ctx.store.set(USER, ConversationSession(state=ConversationState.POST_ANALYSIS)))
    assert say(ctx, "고마워요") == FAREWELL_MESSAGE
    assert current(ctx) is None


def test_history_is_capped(ctx: ConversationContext, monkeypatch: pytest.MonkeyPatch) -> None:
    rounds = MAX_HISTORY_TURNS
    fake_extraction(monkeypatch, *[{"extracted_info": {}, "next_question": "생년월일은요?"} for _ in range(rounds)])
    start_collecting(ctx)
    for _ in range(rounds):
        say(ctx, "음...")
    assert len(current(ctx).history) == MAX_HISTORY_TURNS
