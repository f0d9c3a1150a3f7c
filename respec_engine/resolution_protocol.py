# respec_engine/resolution_protocol.py

import logging
from dataclasses import dataclass, field

from respec_engine.artifact_manager import ArtifactManager
from respec_engine.conflict_questions import (
    NO_CONFLICTS_MESSAGE,
    ConflictMessageWriter,
    TemplateConflictWriter,
)
from respec_engine.conflicts import Conflict, ResolutionOption, StructuredConflicts, option_letter
from respec_engine.errors import ResolutionNotFoundError, SchemaIntegrityError, VerificationFailure
from respec_engine.history_cache import ResolutionHistory
from respec_engine.interpreters import ConflictInterpreter, KeywordConflictInterpreter, StructuredAnswer
from respec_engine.settings import CONFIDENCE_THRESHOLD

logger = logging.getLogger("respec_engine")


NO_CONFLICTS = "no_conflicts"
CLARIFICATION_PROVIDED = "clarification_provided"
CLARIFICATION_NEEDED = "clarification_needed"
INVALID_CHOICE = "invalid_choice"
RESOLUTION_SUCCESS = "resolution_success"
RESOLUTION_FAILED = "resolution_failed"

LOW_CONFIDENCE_MESSAGE = 'I\'m not sure which option you\'re choosing. Please respond with either "A" or "B".'


@dataclass
class ResolutionTurn:
    response: str
    mode: str
    conflict_id: str | None = None
    conflict_ids: list[str] = field(default_factory=list)
    chosen_option: ResolutionOption | None = None
    cycle_count: int | None = None
    answer: StructuredAnswer | None = None
    outcomes: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "response": self.response,
            "mode": self.mode,
            "conflict_id": self.conflict_id,
            "conflict_ids": list(self.conflict_ids),
            "chosen_option": self.chosen_option.to_dict() if self.chosen_option else None,
            "cycle_count": self.cycle_count,
            "answer": self.answer.to_dict() if self.answer else None,
            "outcomes": list(self.outcomes),
        }


def _invalid_choice_message(conflict: Conflict) -> str:
    names = [f"Option {option_letter(o.id)}" for o in conflict.options]
    if len(names) == 2:
        return f"Please choose either {names[0]} or {names[1]}."
    if len(names) == 1:
        return f"The only available choice is {names[0]}. Please respond with {option_letter(conflict.options[0].id)}."
    return f"Please choose one of {', '.join(names[:-1])} or {names[-1]}."


class ConflictResolutionProtocol:
    """
    Turn handler for the AwaitingResolution state.

    Each user reply to a conflict question ends in exactly one mode:
    clarification_provided, clarification_needed, invalid_choice,
    resolution_success or resolution_failed (no_conflicts when there is
    nothing to resolve). A confident choice is applied with the same letter to
    every conflict of the batch that is still active.
    """

    def __init__(
        self,
        interpreter: ConflictInterpreter | None = None,
        writer: ConflictMessageWriter | None = None,
        *,
        confidence_threshold: float = CONFIDENCE_THRESHOLD,
        history: ResolutionHistory | None = None,
    ):
        self.interpreter = interpreter or KeywordConflictInterpreter()
        self.writer = writer or TemplateConflictWriter()
        self.confidence_threshold = confidence_threshold
        self.history = history if history is not None else ResolutionHistory()

    # -----------------------
    # Building blocks
    # -----------------------

    def parse_conflict_response(self, text: str, context: Conflict | None = None) -> StructuredAnswer:
        return self.interpreter.interpret(text, context)

    def generate_conflict_question(self, structured: StructuredConflicts) -> str:
        return self.writer.conflict_question(structured, self.history.snapshot())

    def generate_clarification(self, user_message: str, conflict: Conflict) -> str:
        return self.writer.clarification(user_message, conflict, self.history.snapshot())

    def _bump_cycles(self, conflicts, artifact_manager: ArtifactManager) -> dict[str, int | None]:
        return {c.id: artifact_manager.increment_conflict_cycle(c.id) for c in conflicts}

    def _escalation_note(self, conflicts, artifact_manager: ArtifactManager) -> str:
        escalated = [c for c in conflicts if c.id in artifact_manager.store.escalated_conflicts]
        if not escalated:
            return ""
        return (
            f"\n\nI've set {len(escalated)} conflict(s) aside after several unclear answers; "
            f"they are flagged for review."
        )

    # -----------------------
    # Turn handling
    # -----------------------

    def handle_conflict_resolution(
        self,
        user_message: str,
        structured: StructuredConflicts,
        artifact_manager: ArtifactManager,
    ) -> ResolutionTurn:
        turn = self._handle(user_message, structured, artifact_manager)
        logger.info(f"Conflict turn mode={turn.mode} conflict={turn.conflict_id} cycles={turn.cycle_count}")
        self.history.append_turn(user_message, turn.response)
        return turn

    def _handle(self, user_message: str, structured: StructuredConflicts, artifact_manager: ArtifactManager) -> ResolutionTurn:
        if not structured.has_conflicts:
            return ResolutionTurn(response=NO_CONFLICTS_MESSAGE, mode=NO_CONFLICTS)

        conflicts = list(structured.conflicts)
        conflict = structured.current or conflicts[0]
        batch_ids = [c.id for c in conflicts]

        answer = self.parse_conflict_response(user_message, conflict)
        logger.debug(f"Parsed conflict reply: {answer.to_dict()}")

        if not answer.is_resolution:
            if len(conflicts) > 1:
                response = self.generate_conflict_question(structured)
            else:
                response = self.generate_clarification(user_message, conflict)
            return ResolutionTurn(
                response=response,
                mode=CLARIFICATION_PROVIDED,
                conflict_id=conflict.id,
                conflict_ids=batch_ids,
                cycle_count=conflict.cycle_count,
                answer=answer,
            )

        if answer.confidence < self.confidence_threshold:
            cycles = self._bump_cycles(conflicts, artifact_manager)
            return ResolutionTurn(
                response=LOW_CONFIDENCE_MESSAGE + self._escalation_note(conflicts, artifact_manager),
                mode=CLARIFICATION_NEEDED,
                conflict_id=conflict.id,
                conflict_ids=batch_ids,
                cycle_count=cycles.get(conflict.id),
                answer=answer,
            )

        option_id = f"option-{answer.choice}" if answer.choice else None
        if option_id is None or any(c.option(option_id) is None for c in conflicts):
            return self._invalid_choice(conflict, conflicts, artifact_manager, answer)

        return self._apply_batch(conflicts, conflict, option_id, artifact_manager, answer)

    def _invalid_choice(self, conflict, conflicts, artifact_manager, answer, outcomes=None) -> ResolutionTurn:
        pending = [c for c in conflicts if artifact_manager.has_active_conflict(c.id)]
        cycles = self._bump_cycles(pending, artifact_manager)
        return ResolutionTurn(
            response=_invalid_choice_message(conflict) + self._escalation_note(pending, artifact_manager),
            mode=INVALID_CHOICE,
            conflict_id=conflict.id,
            conflict_ids=[c.id for c in conflicts],
            cycle_count=cycles.get(conflict.id),
            answer=answer,
            outcomes=outcomes or [],
        )

    def _apply_batch(self, conflicts, conflict, option_id, artifact_manager: ArtifactManager, answer) -> ResolutionTurn:
        outcomes: list[dict] = []
        batch_ids = [c.id for c in conflicts]

        for entry in conflicts:
            if not artifact_manager.has_active_conflict(entry.id):
                outcomes.append({"conflict_id": entry.id, "mode": "skipped"})
                continue
            try:
                artifact_manager.apply_conflict_resolution(entry.id, option_id)
            except ResolutionNotFoundError as e:
                logger.info(f"Resolution of {entry.id} rejected: {e}")
                outcomes.append({"conflict_id": entry.id, "mode": INVALID_CHOICE, "error": str(e)})
                return self._invalid_choice(entry, conflicts, artifact_manager, answer, outcomes)
            except (VerificationFailure, SchemaIntegrityError) as e:
                logger.info(f"Resolution of {entry.id} rolled back: {e}")
                outcomes.append({"conflict_id": entry.id, "mode": RESOLUTION_FAILED, "error": str(e)})
                return ResolutionTurn(
                    response=(
                        f"I encountered an issue applying that choice: {e}\n\n"
                        f"Let me try presenting the options again."
                    ),
                    mode=RESOLUTION_FAILED,
                    conflict_id=entry.id,
                    conflict_ids=batch_ids,
                    answer=answer,
                    outcomes=outcomes,
                )
            outcomes.append({"conflict_id": entry.id, "mode": RESOLUTION_SUCCESS})

        resolved_count = sum(1 for o in outcomes if o["mode"] == RESOLUTION_SUCCESS)
        remaining = artifact_manager.get_active_conflicts_for_agent().count

        chosen_option = conflict.option(option_id) if len(conflicts) == 1 else None
        if chosen_option is not None:
            response = f"Got it! I've updated your configuration with {chosen_option.label}.\n\n{chosen_option.outcome}"
        else:
            response = f"Got it! I've applied Option {option_letter(option_id)} across {resolved_count} conflict(s)."

        if remaining > 0:
            response += f"\n\n{remaining} more conflict(s) to resolve."
        else:
            response += "\n\nYour system is now conflict-free. What else would you like to configure?"

        return ResolutionTurn(
            response=response,
            mode=RESOLUTION_SUCCESS,
            conflict_id=conflict.id,
            conflict_ids=batch_ids,
            chosen_option=chosen_option,
            answer=answer,
            outcomes=outcomes,
        )
