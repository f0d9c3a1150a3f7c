# respec_engine/interpreters.py

import logging
import re

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from respec_engine.base_utils import BaseUtils
from respec_engine.conflicts import Conflict, option_letter
from respec_engine.errors import InterpretationServiceError
from respec_prompts.conflict_prompts import CONFLICT_RESPONSE_PARSER_PROMPT

logger = logging.getLogger("respec_engine")


class StructuredAnswer(BaseModel):
    """
    What any interpreter returns for a user's reply to a conflict question.
    Accepts the camelCase keys the LLM is prompted with.
    """
    model_config = ConfigDict(populate_by_name=True)

    is_resolution: bool = Field(False, alias="isResolution")
    choice: str | None = None
    confidence: float = 0.0
    raw_response: str = Field("", alias="rawResponse")
    reasoning: str | None = None

    @field_validator("choice", mode="before")
    @classmethod
    def _normalize_choice(cls, v):
        if v is None:
            return None
        text = str(v).strip().lower()
        text = re.sub(r"^option[\s\-_]*", "", text)
        return text or None

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, v):
        try:
            value = float(v)
        except (TypeError, ValueError):
            return 0.0
        if value != value:
            return 0.0
        return min(1.0, max(0.0, value))

    def to_dict(self) -> dict:
        out = {
            "isResolution": self.is_resolution,
            "choice": self.choice,
            "confidence": self.confidence,
            "rawResponse": self.raw_response,
        }
        if self.reasoning:
            out["reasoning"] = self.reasoning
        return out


class ConflictInterpreter:
    """
    interpret(text, context) -> StructuredAnswer. context is the conflict under discussion.
    """

    def interpret(self, text: str, context: Conflict | None = None) -> StructuredAnswer:
        raise NotImplementedError


class KeywordConflictInterpreter(ConflictInterpreter):
    """
    Deterministic interpreter: looks for an unambiguous marker of the first or
    second option at the start of the reply or anywhere as a phrase.
    """

    PHRASES = {
        "a": ("option a", "first option", "first one", "choice a", "option 1", "the first"),
        "b": ("option b", "second option", "second one", "choice b", "option 2", "the second"),
    }
    LEADING_WORDS = {
        "a": ("a", "first", "1"),
        "b": ("b", "second", "2"),
    }
    # leading marker: the whole reply, or closed by punctuation ("a.", "b)")
    _LEADING_TOKEN = re.compile(r"^[\"'(\[]*([a-z0-9]+)(?:$|[\"')\].,!:;\-])")

    def _points_to(self, msg: str, letter: str) -> bool:
        for phrase in self.PHRASES[letter]:
            if re.search(rf"\b{re.escape(phrase)}\b", msg):
                return True
        m = self._LEADING_TOKEN.match(msg)
        return bool(m and m.group(1) in self.LEADING_WORDS[letter])

    def interpret(self, text: str, context: Conflict | None = None) -> StructuredAnswer:
        msg = " ".join((text or "").lower().split())
        picks_a = self._points_to(msg, "a")
        picks_b = self._points_to(msg, "b")
        # "a or b?" names both letters; treat as undecided
        if picks_a and re.search(r"(?<![\w'])b(?![\w'])", msg):
            picks_b = True

        if picks_a != picks_b:
            choice = "a" if picks_a else "b"
            return StructuredAnswer(is_resolution=True, choice=choice, confidence=1.0, raw_response=text or "")
        return StructuredAnswer(is_resolution=False, choice=None, confidence=0.0, raw_response=text or "")


class LlmConflictInterpreter(BaseUtils, ConflictInterpreter):
    """
    Uses the interpretation service. Every failure (transport, timeout,
    unparseable or invalid JSON) is raised as InterpretationServiceError.
    """

    def __init__(self, llm):
        self.llm = llm

    def _options_block(self, context: Conflict | None) -> str:
        if context is None:
            return "Option A\nOption B"
        lines = []
        for opt in context.options:
            lines.append(f"Option {option_letter(opt.id)}: {opt.label}\n  Outcome: {opt.outcome}")
        return "\n".join(lines)

    def interpret(self, text: str, context: Conflict | None = None) -> StructuredAnswer:
        prompt = self.unsafe_string_format(
            CONFLICT_RESPONSE_PARSER_PROMPT,
            USER_MESSAGE=(text or "").replace('"', "'"),
            CONFLICT_DESCRIPTION=context.description if context else "",
            OPTIONS_BLOCK=self._options_block(context),
        )

        try:
            raw = self.llm.invoke(prompt)
        except InterpretationServiceError:
            raise
        except Exception as e:
            raise InterpretationServiceError(f"Interpretation call failed: {e}") from e

        data = self.load_fault_tolerant_json(raw if isinstance(raw, str) else getattr(raw, "content", ""))
        if not isinstance(data, dict):
            raise InterpretationServiceError(f"Interpretation returned no JSON object: {raw!r}")

        data = {k: v for k, v in data.items() if k not in ("rawResponse", "raw_response")}
        try:
            answer = StructuredAnswer.model_validate({**data, "rawResponse": text or ""})
        except ValidationError as e:
            raise InterpretationServiceError(f"Interpretation returned an invalid answer: {e}") from e

        logger.debug(f"LLM interpretation of {text!r}: {answer.to_dict()}")
        return answer


class FallbackInterpreter(ConflictInterpreter):
    """
    Tries the primary interpreter; on InterpretationServiceError answers with the fallback.
    """

    def __init__(self, primary: ConflictInterpreter, fallback: ConflictInterpreter):
        self.primary = primary
        self.fallback = fallback

    def interpret(self, text: str, context: Conflict | None = None) -> StructuredAnswer:
        try:
            return self.primary.interpret(text, context)
        except InterpretationServiceError as e:
            logger.info(f"Interpretation service unavailable, using deterministic parser: {e}")
            return self.fallback.interpret(text, context)


def build_interpreter(llm=None) -> ConflictInterpreter:
    if llm is None:
        return KeywordConflictInterpreter()
    return FallbackInterpreter(LlmConflictInterpreter(llm), KeywordConflictInterpreter())


def parse_conflict_response(text: str, context: Conflict | None = None, interpreter: ConflictInterpreter | None = None) -> StructuredAnswer:
    return (interpreter or KeywordConflictInterpreter()).interpret(text, context)
