import pytest

from respec_engine.errors import InterpretationServiceError
from respec_engine.interpreters import (
    FallbackInterpreter,
    KeywordConflictInterpreter,
    LlmConflictInterpreter,
    StructuredAnswer,
    build_interpreter,
    parse_conflict_response,
)

from conftest import FakeLlm


@pytest.mark.parametrize(
    "text, choice",
    [
        ("a", "a"),
        ("A.", "a"),
        ("Option B please", "b"),
        ("I'll take the first one", "a"),
        ("let's go with the second option", "b"),
        ("1", "a"),
        ("b) the battery one", "b"),
        ("A, the grid powered one", "a"),
        ("(b)", "b"),
        ("2!", "b"),
    ],
)
def test_keyword_interpreter_choices(text, choice):
    answer = KeywordConflictInterpreter().interpret(text)
    assert answer.is_resolution
    assert answer.choice == choice
    assert answer.confidence == 1.0
    assert answer.raw_response == text


@pytest.mark.parametrize(
    "text",
    [
        "What's the difference?",
        "a or b?",
        "option a vs option b",
        "",
        "how much battery life would I lose",
        "A lower power budget is what I need",
        "a fast CPU matters more",
        "b careful with the thermals",
    ],
)
def test_keyword_interpreter_non_answers(text):
    answer = KeywordConflictInterpreter().interpret(text)
    assert not answer.is_resolution
    assert answer.choice is None
    assert answer.confidence == 0.0


def test_structured_answer_normalises_llm_output():
    answer = StructuredAnswer.model_validate(
        {"isResolution": True, "choice": "Option B", "confidence": 1.7, "rawResponse": "b"}
    )
    assert answer.choice == "b"
    assert answer.confidence == 1.0
    assert StructuredAnswer(confidence=-3).confidence == 0.0
    assert StructuredAnswer(confidence="high").confidence == 0.0
    assert StructuredAnswer(confidence=float("nan")).confidence == 0.0
    assert answer.to_dict() == {"isResolution": True, "choice": "b", "confidence": 1.0, "rawResponse": "b"}


def test_llm_interpreter_fills_the_prompt():
    llm = FakeLlm({"isResolution": True, "choice": "a", "confidence": 0.92, "reasoning": "picked battery"})
    answer = LlmConflictInterpreter(llm).interpret('go with "the fast one"')

    assert answer.is_resolution
    assert answer.choice == "a"
    assert answer.confidence == 0.92
    assert answer.raw_response == 'go with "the fast one"'
    assert answer.reasoning == "picked battery"
    assert "go with 'the fast one'" in llm.prompts[0]
    assert "{USER_MESSAGE}" not in llm.prompts[0]


def test_llm_interpreter_reads_fenced_json():
    llm = FakeLlm('```json\n{"isResolution": false, "choice": null, "confidence": 0.1}\n```')
    answer = LlmConflictInterpreter(llm).interpret("what does that mean?")
    assert not answer.is_resolution
    assert answer.choice is None


def test_llm_interpreter_errors():
    with pytest.raises(InterpretationServiceError):
        LlmConflictInterpreter(FakeLlm(TimeoutError("deadline exceeded"))).interpret("a")
    with pytest.raises(InterpretationServiceError):
        LlmConflictInterpreter(FakeLlm("")).interpret("a")
    with pytest.raises(InterpretationServiceError):
        LlmConflictInterpreter(FakeLlm({"isResolution": "perhaps"})).interpret("a")


def test_fallback_uses_keywords_when_the_service_fails():
    interpreter = FallbackInterpreter(
        LlmConflictInterpreter(FakeLlm(RuntimeError("connection reset"))),
        KeywordConflictInterpreter(),
    )
    answer = interpreter.interpret("B")
    assert answer.choice == "b"
    assert answer.confidence == 1.0


def test_build_interpreter():
    assert isinstance(build_interpreter(), KeywordConflictInterpreter)
    assert isinstance(build_interpreter(FakeLlm({})), FallbackInterpreter)


def test_parse_conflict_response_defaults_to_keywords():
    assert parse_conflict_response("option a").choice == "a"
