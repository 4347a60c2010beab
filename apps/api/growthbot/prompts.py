"""Prompt text and fixed chat copy for the growth consultation bot."""
from __future__ import annotations

import json
from typing import Any, Dict, List

from .schemas import ChatTurn, CollectedInfo

SYSTEM_PROMPT = """
당신은 '친절한 의료상담가봇'입니다. 사용자와 자연스럽게 대화하며 아이의 '생년월일(birth_date)', '성별(gender)', '키(height)', '몸무게(weight)'를 수집하는 것이 목표입니다.
응답은 반드시 아래 JSON 형식으로만 반환하세요.
{
  "extracted_info": {
    "birth_date": "YYYY-MM-DD 형식의 문자열 또는 null",
    "gender": "'남자' 또는 '여자' 또는 null",
    "height": "cm 단위 숫자 또는 null",
    "weight": "kg 단위 숫자 또는 null"
  },
  "next_question": "사용자에게 물어볼 자연스러운 다음 질문 문자열"
}
- 대화 기록과 마지막 답변을 참고해 '부족한 정보' 중 하나를 얻기 위한 질문을 하나만 만드세요.
- 예: "아들은 2023년 5월 10일에 태어났고, 키는 85cm야" -> birth_date, gender, height를 추출하고 몸무게를 묻습니다.
- 모든 정보가 수집되었다면 next_question은 빈 문자열로 두세요.
- 친절하고 상냥한 말투를 사용하세요.
"""

AFFIRMATIVE_PHRASES = ["네", "네네", "응", "좋아", "시작", "알려줘"]
NEGATIVE_PHRASES = ["아니요", "아니", "괜찮아", "그만"]
END_PHRASES = ["종료", "그만", "안해", "나가기"]
RESET_PHRASES = ["초기화", "리셋", "다시 시작", "처음부터"]

GREETING_MESSAGE = (
    "안녕하세요! 소아청소년 성장 발달 상담 AI입니다. "
    "자녀의 성장 정보를 알려주시면 백분위를 분석해 드릴게요. 상담을 시작할까요?"
)
ASK_BIRTH_DATE_MESSAGE = "좋아요! 그럼 먼저 자녀의 생년월일을 알려주시겠어요?"
DECLINED_MESSAGE = "네, 알겠습니다. 언제든 도움이 필요하시면 다시 불러주세요."
ENDED_MESSAGE = "상담을 종료합니다. 이용해주셔서 감사합니다."
FAREWELL_MESSAGE = "상담을 종료합니다. 자녀의 건강한 성장을 응원합니다! 🌱"
FALLBACK_QUESTION = "다음 정보를 알려주시겠어요?"
THINKING_QUESTION = "죄송해요, 잠시 생각할 시간을 주시겠어요?"
SYSTEM_ERROR_MESSAGE = "죄송합니다, 시스템에 오류가 발생했습니다. 잠시 후 다시 시도해주세요."
REPORT_FAILED_MESSAGE = "분석 리포트 생성에 실패했습니다. 입력값을 확인 후 다시 시도해주세요."
LOOKUP_RETRY_MESSAGE = "성장 기준 데이터를 불러오지 못했어요. 잠시 후 다시 시도해주세요."
UNSUPPORTED_AGE_MESSAGE = (
    "죄송하지만, 만 18세(227개월)까지의 정보만 조회할 수 있습니다. 생년월일을 다시 확인해주시겠어요?"
)

FIELD_LABELS = {
    "birth_date": "생년월일",
    "gender": "성별",
    "height": "키",
    "weight": "몸무게",
}

USER_LABEL = "user"
ASSISTANT_LABEL = "assistant"


def contains_any(utterance: str, phrases: List[str]) -> bool:
    return any(phrase in utterance for phrase in phrases)


def build_extraction_messages(
    history: List[ChatTurn],
    collected: CollectedInfo,
    utterance: str,
) -> List[Dict[str, str]]:
    """System prompt, the running history, then a status line about what is still missing."""
    missing = collected.missing_fields()
    known = collected.model_dump(exclude_none=True)
    messages: List[Dict[str, str]] = [{"role": "system", "content": SYSTEM_PROMPT}]
    messages.extend({"role": turn.role, "content": turn.content} for turn in history)
    messages.append(
        {
            "role": "user",
            "content": (
                f"현재까지 수집된 정보: {json.dumps(known, ensure_ascii=False)}. "
                f"부족한 정보: [{', '.join(missing)}]. "
                f'사용자의 마지막 답변 "{utterance}"을 분석해서 정보를 추출하고, 자연스러운 다음 질문을 하나만 생성해줘.'
            ),
        }
    )
    return messages


def build_report_prompt(report: Dict[str, Any]) -> str:
    """Prompt asking the LLM to narrate a finished report for the parent."""
    sex_label = "남자아이" if report["sex"] == "male" else "여자아이"
    return f"""
너는 친절하고 전문적인 소아청소년과 상담가 AI야.
아래 데이터를 바탕으로 부모님께 아이의 성장 발달 상태를 설명하는 짧은 리포트를 작성해줘.
- 데이터:
  - 성별: {sex_label}
  - 나이: {report["age_months"]}개월
  - 키: {report["height"]}cm (백분위 {report["height_percentile"]}, 상위 {report["height_top"]}%)
  - 몸무게: {report["weight"]}kg (백분위 {report["weight_percentile"]}, 상위 {report["weight_top"]}%)
- 지침:
  1. 아이의 정보를 먼저 요약해줘.
  2. 키와 몸무게 백분위 수치를 명확히 알려줘.
  3. 백분위의 의미를 쉽게 설명해줘.
  4. 긍정적이고 격려하는 말로 마무리해줘.
  5. "다시 상담하시려면 '초기화'라고 입력해주세요." 라는 안내를 추가해줘.
"""


def format_report(report: Dict[str, Any]) -> str:
    """Template report used when no narrative is drafted."""
    return (
        "📈 분석 결과입니다.\n\n"
        f"✅ 나이: 만 {report['age_months']}개월\n"
        f"✅ 키: {report['height']}cm (백분위 {report['height_percentile']}, 상위 {report['height_top']}%)\n"
        f"✅ 체중: {report['weight']}kg (백분위 {report['weight_percentile']}, 상위 {report['weight_top']}%)\n\n"
        f"같은 나이, 같은 성별의 아이 100명 중 키는 약 {_rank(report['height_top'])}번째, "
        f"체중은 약 {_rank(report['weight_top'])}번째에 해당해요.\n\n"
        "추가로 궁금한 점이 있으신가요? (초기화 또는 종료)"
    )


def _rank(top_percent: float) -> int:
    return max(1, min(100, int(round(top_percent))))


def no_data_message(age_months: int, measurement_label: str) -> str:
    return f"죄송합니다. 해당 개월 수({age_months}개월)의 {measurement_label} 데이터가 없습니다."
