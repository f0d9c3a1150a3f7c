# respec_engine/backend.py

import json
import logging
import traceback

from respec_engine.artifact_manager import ArtifactManager
from respec_engine.base_utils import BaseUtils
from respec_engine.conflict_detector import ConflictDetector
from respec_engine.conflict_questions import build_message_writer
from respec_engine.errors import ResolutionNotFoundError, SchemaIntegrityError, VerificationFailure
from respec_engine.history_cache import ResolutionHistory
from respec_engine.interpreters import build_interpreter
from respec_engine.mutex_rules import build_mutex_rules
from respec_engine.resolution_protocol import (
    INVALID_CHOICE,
    RESOLUTION_FAILED,
    RESOLUTION_SUCCESS,
    ConflictResolutionProtocol,
)
from respec_engine.schema_model import SchemaModel
from respec_engine.settings import CONFIDENCE_THRESHOLD, LLM_MODEL, MAX_CONFLICT_CYCLES, load_rules_config
from respec_engine.units import UnitRegistry

logger = logging.getLogger("respec_engine")


class RespecBackend(BaseUtils):
    """
    One configuration session: owns its ArtifactManager and resolution protocol
    and answers {type, payload, sender_id} requests from the chat/UI layer.
    """

    def __init__(
        self,
        schema: SchemaModel,
        *,
        session_id: str | None = None,
        model_name: str | None = LLM_MODEL,
        llm=None,
        chat_llm=None,
        rules_path: str | None = None,
        max_conflict_cycles: int | None = MAX_CONFLICT_CYCLES,
        confidence_threshold: float = CONFIDENCE_THRESHOLD,
    ):
        self.session_id = session_id
        self.schema = schema

        rules = load_rules_config(rules_path)
        detector = ConflictDetector(
            schema,
            build_mutex_rules(rules["MUTEX_RULES"]),
            UnitRegistry(rules["UNIT_CONVERSIONS"]),
        )
        self.artifact_manager = ArtifactManager(schema, detector, max_conflict_cycles=max_conflict_cycles)

        if llm is None and chat_llm is None:
            llm, chat_llm = self._build_llms_for_model(model_name)

        self.history = ResolutionHistory()
        self.protocol = ConflictResolutionProtocol(
            build_interpreter(llm),
            build_message_writer(chat_llm),
            confidence_threshold=confidence_threshold,
            history=self.history,
        )

    def process_request(self, request_data: dict) -> dict:
        """
        Core request handling logic.
        Takes a parsed JSON dict and returns the response_data dict.
        """
        try:
            request_type = request_data.get("type")
            payload = request_data.get("payload") or {}
            session_id = str(request_data.get("sender_id") or self.session_id)

            try:
                preview = json.dumps(request_data, indent=2, default=str)
            except (TypeError, ValueError):
                preview = str(request_data)
            logger.debug(f"process_request request {preview}")

            response_data = {
                "status": "success",
                "message": "",
                "session_id": session_id,
            }

            if request_type == "sync_fields":
                response_data["data"] = self.handle_sync_fields(payload)

            elif request_type == "clear_field":
                response_data["data"] = self.handle_clear_field(payload)

            elif request_type == "chat":
                response_data["data"] = self.handle_chat(payload)

            elif request_type == "get_conflicts":
                response_data["data"] = self.artifact_manager.get_active_conflicts_for_agent().to_dict()

            elif request_type == "conflict_question":
                structured = self.artifact_manager.get_active_conflicts_for_agent()
                response_data["data"] = {"question": self.protocol.generate_conflict_question(structured)}

            elif request_type == "resolve_conflict":
                response_data["data"] = self.handle_resolve_conflict(payload)

            elif request_type == "form_updates":
                response_data["data"] = {"updates": self.artifact_manager.generate_form_updates()}

            elif request_type == "get_state":
                response_data["data"] = self.artifact_manager.get_state()

            else:
                response_data["status"] = "error"
                response_data["message"] = f"Unknown request type: {request_type}"

            logger.debug(f"response status={response_data['status']} type={request_type}")
            return response_data

        except Exception as e:
            logger.info(f"Error while processing request data: {e}")
            traceback.print_exc()
            raise

    # -----------------------
    # Handlers
    # -----------------------

    def handle_sync_fields(self, payload: dict) -> dict:
        fields = payload.get("fields")
        if fields is None or not isinstance(fields, dict):
            raise ValueError("sync_fields payload.fields must be an object of section -> field -> update")
        provenance = payload.get("provenance") or "extraction"
        structured = self.artifact_manager.sync(fields, provenance=provenance)
        return {
            "conflicts": structured.to_dict(),
            "unmapped": self.artifact_manager.get_unmapped(),
        }

    def handle_clear_field(self, payload: dict) -> dict:
        section = (payload.get("section") or "").strip()
        field_name = (payload.get("field") or "").strip()
        if not section or not field_name:
            raise ValueError("clear_field payload needs 'section' and 'field'")
        structured = self.artifact_manager.clear_field(section, field_name, payload.get("artifact"))
        return {"conflicts": structured.to_dict()}

    def handle_chat(self, payload: dict) -> dict:
        message = payload.get("message")
        if not isinstance(message, str) or not message.strip():
            raise ValueError("chat payload.message is required (non-empty string)")

        structured = self.artifact_manager.get_active_conflicts_for_agent()
        if not structured.system_blocked:
            # intake of new requirements belongs to the extraction layer
            return {"mode": "intake_open", "response": None, "conflicts": structured.to_dict()}

        turn = self.protocol.handle_conflict_resolution(message, structured, self.artifact_manager)
        data = turn.to_dict()
        data["conflicts"] = self.artifact_manager.get_active_conflicts_for_agent().to_dict()
        data["form_updates"] = self.artifact_manager.generate_form_updates() if turn.mode == RESOLUTION_SUCCESS else []
        return data

    def handle_resolve_conflict(self, payload: dict) -> dict:
        """
        Direct resolution from a conflict panel: conflict id + option id, no text parsing.
        """
        conflict_id = payload.get("conflict_id")
        option_id = payload.get("option_id")
        if not conflict_id or not option_id:
            raise ValueError("resolve_conflict payload needs 'conflict_id' and 'option_id'")

        try:
            result = self.artifact_manager.apply_conflict_resolution(conflict_id, option_id)
            mode, error = RESOLUTION_SUCCESS, None
        except ResolutionNotFoundError as e:
            # invalid_choice always bumps a live conflict
            self.artifact_manager.increment_conflict_cycle(conflict_id)
            result, mode, error = None, INVALID_CHOICE, str(e)
        except (VerificationFailure, SchemaIntegrityError) as e:
            result, mode, error = None, RESOLUTION_FAILED, str(e)

        return {
            "mode": mode,
            "success": result is not None,
            "error": error,
            "removed": result.removed if result else [],
            "assigned": result.assigned if result else [],
            "conflicts": self.artifact_manager.get_active_conflicts_for_agent().to_dict(),
        }
