# respec_engine/conflict_questions.py

import logging

from langchain_core.messages import HumanMessage, SystemMessage

from respec_engine.base_utils import BaseUtils
from respec_engine.conflicts import Conflict, StructuredConflicts, option_letter
from respec_engine.errors import InterpretationServiceError
from respec_prompts.conflict_prompts import (
    CONFLICT_AGENT_SYSTEM_PROMPT,
    CONFLICT_CLARIFICATION_PROMPT,
    CONFLICT_QUESTION_PROMPT,
)

logger = logging.getLogger("respec_engine")


NO_CONFLICTS_MESSAGE = "No conflicts to resolve."


def _letters_phrase(letters: list[str]) -> str:
    if len(letters) == 1:
        return letters[0]
    return ", ".join(letters[:-1]) + f" or {letters[-1]}"


def _option_letters(conflicts) -> list[str]:
    letters: list[str] = []
    for conflict in conflicts:
        for opt in conflict.options:
            letter = option_letter(opt.id)
            if letter not in letters:
                letters.append(letter)
    return sorted(letters)


class ConflictMessageWriter:
    def conflict_question(self, structured: StructuredConflicts, history=None) -> str:
        raise NotImplementedError

    def clarification(self, user_message: str, conflict: Conflict, history=None) -> str:
        raise NotImplementedError


class TemplateConflictWriter(ConflictMessageWriter):
    """
    Deterministic wording used whenever the language service is absent or fails.
    """

    def conflict_question(self, structured: StructuredConflicts, history=None) -> str:
        conflicts = list(structured.conflicts)
        if not conflicts:
            return NO_CONFLICTS_MESSAGE

        closing = f"Please respond with {_letters_phrase(_option_letters(conflicts))}."

        if len(conflicts) == 1:
            conflict = conflicts[0]
            lines = [f"I detected a conflict: {conflict.description}", "", "Which would you prefer?"]
            for opt in conflict.options:
                lines.append(f"Option {option_letter(opt.id)}: {opt.label}")
                lines.append(f"   Outcome: {opt.outcome}")
                lines.append("")
            lines.append(closing)
            return "\n".join(lines)

        lines = [f"I detected {len(conflicts)} conflicts that need your decision:", ""]
        for i, conflict in enumerate(conflicts, start=1):
            lines.append(f"{i}. {conflict.description}")
            for opt in conflict.options:
                lines.append(f"   Option {option_letter(opt.id)}: {opt.label} ({opt.outcome})")
            lines.append("")
        lines.append(
            "Your answer applies to all of them: the letter you pick is used for every conflict above."
        )
        lines.append(closing)
        return "\n".join(lines)

    def clarification(self, user_message: str, conflict: Conflict, history=None) -> str:
        lines = ["To help you decide, let me clarify:", ""]
        for opt in conflict.options:
            lines.append(f"Option {option_letter(opt.id)}: {opt.label}")
        lines.append("")
        lines.append(f"Please choose {_letters_phrase(_option_letters([conflict]))}.")
        return "\n".join(lines)


class LlmConflictWriter(BaseUtils, ConflictMessageWriter):
    """
    Conversational wording from the chat model. Output that drops an option
    label is rejected so the caller falls back to the template.
    """

    def __init__(self, chat_llm):
        self.chat_llm = chat_llm

    def _ask(self, prompt: str, history=None) -> str:
        messages = [SystemMessage(content=CONFLICT_AGENT_SYSTEM_PROMPT), *(history or []), HumanMessage(content=prompt)]
        try:
            text = self.chat_llm.invoke(messages)
        except InterpretationServiceError:
            raise
        except Exception as e:
            raise InterpretationServiceError(f"Conflict message generation failed: {e}") from e
        text = self.clean_triple_backticks(text if isinstance(text, str) else getattr(text, "content", ""))
        if not text:
            raise InterpretationServiceError("Conflict message generation returned an empty message")
        return text

    def _require_labels(self, text: str, conflicts) -> str:
        for conflict in conflicts:
            for opt in conflict.options:
                if opt.label not in text:
                    raise InterpretationServiceError(f"Generated message omits option label '{opt.label}'")
        return text

    def conflict_question(self, structured: StructuredConflicts, history=None) -> str:
        conflicts = list(structured.conflicts)
        if not conflicts:
            return NO_CONFLICTS_MESSAGE

        blocks = []
        for i, conflict in enumerate(conflicts, start=1):
            block = [f"{i}. {conflict.description}"]
            for opt in conflict.options:
                block.append(f"   Option {option_letter(opt.id)}: {opt.label}\n      Outcome: {opt.outcome}")
            blocks.append("\n".join(block))

        prompt = self.unsafe_string_format(
            CONFLICT_QUESTION_PROMPT,
            CONFLICT_COUNT=len(conflicts),
            CONFLICTS_BLOCK="\n\n".join(blocks),
        )
        return self._require_labels(self._ask(prompt, history), conflicts)

    def clarification(self, user_message: str, conflict: Conflict, history=None) -> str:
        if len(conflict.options) < 2:
            raise InterpretationServiceError("Clarification prompt needs two options")
        a, b = conflict.options[0], conflict.options[1]
        prompt = self.unsafe_string_format(
            CONFLICT_CLARIFICATION_PROMPT,
            CONFLICT_DESCRIPTION=conflict.description,
            OPTION_A_LABEL=a.label,
            OPTION_A_OUTCOME=a.outcome,
            OPTION_B_LABEL=b.label,
            OPTION_B_OUTCOME=b.outcome,
            USER_MESSAGE=(user_message or "").replace('"', "'"),
        )
        return self._require_labels(self._ask(prompt, history), [conflict])


class FallbackConflictWriter(ConflictMessageWriter):
    def __init__(self, primary: ConflictMessageWriter, fallback: ConflictMessageWriter):
        self.primary = primary
        self.fallback = fallback

    def conflict_question(self, structured: StructuredConflicts, history=None) -> str:
        try:
            return self.primary.conflict_question(structured, history)
        except InterpretationServiceError as e:
            logger.info(f"Falling back to template conflict question: {e}")
            return self.fallback.conflict_question(structured, history)

    def clarification(self, user_message: str, conflict: Conflict, history=None) -> str:
        try:
            return self.primary.clarification(user_message, conflict, history)
        except InterpretationServiceError as e:
            logger.info(f"Falling back to template clarification: {e}")
            return self.fallback.clarification(user_message, conflict, history)


def build_message_writer(chat_llm=None) -> ConflictMessageWriter:
    if chat_llm is None:
        return TemplateConflictWriter()
    return FallbackConflictWriter(LlmConflictWriter(chat_llm), TemplateConflictWriter())


def generate_conflict_question(structured: StructuredConflicts, writer: ConflictMessageWriter | None = None) -> str:
    return (writer or TemplateConflictWriter()).conflict_question(structured)
