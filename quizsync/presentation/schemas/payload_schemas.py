"""
Versioned JSON envelopes for the serialized columns shared by both stores.

Answers and question options used to be stored as bare JSON strings. They are
now written as ``{"v": 1, "answers": {...}}`` / ``{"v": 1, "options": [...]}``
so readers can tell formats apart. Bare mappings and lists are still accepted
on read and treated as version 0.
"""
import json
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from quizsync.application.sync.errors import PayloadFormatError

PAYLOAD_VERSION = 1


def _decode(raw: Optional[str], kind: str) -> Any:
    if raw is None or raw.strip() == "":
        return None
    try:
        return json.loads(raw)
    except (TypeError, json.JSONDecodeError) as e:
        raise PayloadFormatError(f"Malformed {kind} payload: {e}")


def _unwrap(data: Any, key: str, kind: str) -> Any:
    if isinstance(data, dict) and "v" in data:
        version = data.get("v")
        if version != PAYLOAD_VERSION:
            raise PayloadFormatError(f"Unsupported {kind} payload version: {version!r}")
        return data.get(key)
    return data


class AnswerSheet(BaseModel):
    """Question id -> chosen option for one quiz attempt."""

    answers: Dict[str, str] = Field(default_factory=dict)

    @classmethod
    def loads(cls, raw: Optional[str]) -> "AnswerSheet":
        data = _unwrap(_decode(raw, "answers"), "answers", "answers")
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise PayloadFormatError(f"Answers payload must be a mapping, got {type(data).__name__}")

        answers: Dict[str, str] = {}
        for question_id, option in data.items():
            if option is None:
                continue
            if isinstance(option, (dict, list)):
                raise PayloadFormatError(f"Answer for question {question_id} must be a scalar")
            answers[str(question_id)] = str(option)
        return cls(answers=answers)

    def dumps(self) -> str:
        # Sorted keys keep the text stable so both stores compare equal.
        return json.dumps(
            {"v": PAYLOAD_VERSION, "answers": dict(sorted(self.answers.items()))},
            separators=(",", ":"),
        )

    def merged_with(self, other: "AnswerSheet") -> "AnswerSheet":
        """Union of both sheets; this sheet wins on key collision."""
        return AnswerSheet(answers={**other.answers, **self.answers})

    def divergent_keys(self, other: "AnswerSheet") -> List[str]:
        return sorted(
            key
            for key, option in self.answers.items()
            if key in other.answers and other.answers[key] != option
        )

    def with_answer(self, question_id: str, option: str) -> "AnswerSheet":
        return AnswerSheet(answers={**self.answers, str(question_id): str(option)})


class OptionSet(BaseModel):
    """Ordered answer options of a question."""

    options: List[str] = Field(default_factory=list)

    @classmethod
    def loads(cls, raw: Optional[str]) -> "OptionSet":
        data = _unwrap(_decode(raw, "options"), "options", "options")
        if data is None:
            return cls()
        if not isinstance(data, list):
            raise PayloadFormatError(f"Options payload must be a list, got {type(data).__name__}")
        return cls(options=[str(option) for option in data])

    def dumps(self) -> str:
        return json.dumps({"v": PAYLOAD_VERSION, "options": self.options}, separators=(",", ":"))
