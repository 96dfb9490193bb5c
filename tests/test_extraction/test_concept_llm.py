from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace
from typing import Dict, List

import pytest
from fakes import make_concept, make_extracted

from conceptkb.errors import UpstreamError
from conceptkb.extraction.base import ExtractionContext
from conceptkb.extraction.concept_index import ConceptIndex
from conceptkb.extraction.concept_llm import ConceptLLM
from conceptkb.storage.schemas import (
    ConceptCategory,
    ConceptIndexEntry,
    ContentChunk,
    DifficultyLevel,
)
from conceptkb.utils.config import LLMConfig, SimilarityConfig

PROMPTS = Path(__file__).resolve().parents[2] / "config" / "concept_prompts.yaml"

CHUNK = ContentChunk(
    chunk_id="chunk-1",
    type="notes",
    content="Use ser for permanent traits: Soy alto. Use estar for states: Estoy cansado.",
)
CONTEXT = ExtractionContext(document_id="lesson-1", title="Ser and estar", keywords=["ser", "estar"])


def _noop_sleep(_: float) -> None:
    return None


def _llm(sleeps: List[float] | None = None, **config: object) -> ConceptLLM:
    llm_config = LLMConfig(provider="openai", model="test-model", **config)
    return ConceptLLM(
        llm_config,
        SimilarityConfig(min_similarity=0.3, max_matches=2),
        PROMPTS,
        sleep_fn=sleeps.append if sleeps is not None else _noop_sleep,
    )


def _index() -> ConceptIndex:
    return ConceptIndex(
        ConceptIndexEntry.from_concept(c)
        for c in [
            make_concept("c-ser", "Ser y estar", description="Two verbs for to be"),
            make_concept("c-tener", "Tener que"),
            make_concept("c-mesa", "La mesa", ConceptCategory.VOCABULARY),
        ]
    )


def test_extract_concepts_parses_response(monkeypatch: pytest.MonkeyPatch) -> None:
    llm = _llm(retry_attempts=1)
    calls: Dict[str, str] = {}

    def fake_openai(*, system: str, user: str) -> str:
        calls["system"] = system
        calls["user"] = user
        return """
        {
          "concepts": [
            {
              "name": "Ser for permanent traits",
              "category": "Grammar",
              "description": "Use ser for identity and traits",
              "examples": ["Soy alto", "Es médico"],
              "confidence": 1.4,
              "suggestedDifficulty": "a2",
              "suggestedTags": [{"tag": "verbs"}, "ser"]
            },
            {"name": "   "},
            {"name": "Estar", "category": "unknown", "examples": "Estoy cansado"}
          ]
        }
        """

    monkeypatch.setattr(llm, "_call_openai", fake_openai)

    concepts = llm.extract_concepts(CHUNK, CONTEXT)

    assert [c.name for c in concepts] == ["Ser for permanent traits", "Estar"]
    first, second = concepts
    assert first.category == ConceptCategory.GRAMMAR
    assert first.confidence == 1.0
    assert first.suggested_difficulty == DifficultyLevel.A2
    assert first.suggested_tags == ["verbs", "ser"]
    assert second.category == ConceptCategory.GRAMMAR
    assert second.examples == ["Estoy cansado"]
    assert second.confidence == 0.5
    assert second.suggested_difficulty == DifficultyLevel.B1
    assert second.source_content == CHUNK.content[:200]
    assert "Soy alto" in calls["user"]
    assert "Ser and estar" in calls["user"]
    assert "ser, estar" in calls["user"]


def test_extract_concepts_reads_fenced_json(monkeypatch: pytest.MonkeyPatch) -> None:
    llm = _llm(retry_attempts=1)
    monkeypatch.setattr(
        llm,
        "_call_openai",
        lambda *, system, user: 'Here you go:\n```json\n[{"name": "Estar", "category": "grammar"}]\n```',
    )

    assert [c.name for c in llm.extract_concepts(CHUNK, CONTEXT)] == ["Estar"]


def test_unparseable_response_yields_no_concepts(monkeypatch: pytest.MonkeyPatch) -> None:
    llm = _llm(retry_attempts=1)
    monkeypatch.setattr(llm, "_call_openai", lambda *, system, user: "no json here")

    assert llm.extract_concepts(CHUNK, CONTEXT) == []


def test_extraction_retries_with_backoff(monkeypatch: pytest.MonkeyPatch) -> None:
    sleeps: List[float] = []
    llm = _llm(sleeps, retry_attempts=3)
    responses = iter([TimeoutError("slow"), ConnectionError("reset"), '{"concepts": []}'])

    def flaky(*, system: str, user: str) -> str:
        result = next(responses)
        if isinstance(result, Exception):
            raise result
        return result

    monkeypatch.setattr(llm, "_call_openai", flaky)

    assert llm.extract_concepts(CHUNK, CONTEXT) == []
    assert sleeps == [1, 2]


def test_extraction_gives_up_with_upstream_error(monkeypatch: pytest.MonkeyPatch) -> None:
    llm = _llm(retry_attempts=2)

    def broken(*, system: str, user: str) -> str:
        raise TimeoutError("model down")

    monkeypatch.setattr(llm, "_call_openai", broken)

    with pytest.raises(UpstreamError, match="after 2 attempt"):
        llm.extract_concepts(CHUNK, CONTEXT)


def test_judge_similarity_with_empty_index_skips_call(monkeypatch: pytest.MonkeyPatch) -> None:
    llm = _llm()

    def unexpected(*, system: str, user: str) -> str:
        raise AssertionError("no call expected")

    monkeypatch.setattr(llm, "_call_openai", unexpected)

    assert llm.judge_similarity(make_extracted("Ser"), ConceptIndex([])) == []


def test_judge_similarity_filters_and_ranks(monkeypatch: pytest.MonkeyPatch) -> None:
    llm = _llm()
    calls: Dict[str, str] = {}

    def fake_openai(*, system: str, user: str) -> str:
        calls["user"] = user
        return """
        {"matches": [
          {"conceptId": "c-tener", "similarity": 0.4, "justification": "both verbs"},
          {"conceptId": "c-ser", "similarity": 0.9, "mergeSuggestion": "merge"},
          {"conceptId": "c-unknown", "similarity": 0.99},
          {"conceptId": "c-mesa", "similarity": 0.1}
        ]}
        """

    monkeypatch.setattr(llm, "_call_openai", fake_openai)

    matches = llm.judge_similarity(make_extracted("Ser"), _index())

    assert [(m.concept_id, m.score) for m in matches] == [("c-ser", 0.9), ("c-tener", 0.4)]
    assert matches[0].name == "Ser y estar"
    assert matches[0].merge_suggestion == "merge"
    assert matches[0].description == "Two verbs for to be"
    assert "id=c-ser" in calls["user"]


def test_judge_similarity_bad_response_is_upstream_error(monkeypatch: pytest.MonkeyPatch) -> None:
    llm = _llm(retry_attempts=3)
    calls: List[str] = []

    def fake_openai(*, system: str, user: str) -> str:
        calls.append(user)
        return "I think they are similar."

    monkeypatch.setattr(llm, "_call_openai", fake_openai)

    with pytest.raises(UpstreamError):
        llm.judge_similarity(make_extracted("Ser"), _index())
    assert len(calls) == 1


def test_anthropic_client_response_is_joined() -> None:
    class FakeMessages:
        def __init__(self) -> None:
            self.kwargs: Dict[str, object] = {}

        def create(self, **kwargs: object) -> SimpleNamespace:
            self.kwargs = kwargs
            return SimpleNamespace(
                content=[
                    SimpleNamespace(type="text", text='{"concepts": [{"name": "Ser"'),
                    SimpleNamespace(type="tool_use", text="ignored"),
                    SimpleNamespace(type="text", text=', "category": "grammar"}]}'),
                ]
            )

    messages = FakeMessages()
    llm = ConceptLLM(
        LLMConfig(provider="anthropic", model="claude-test", retry_attempts=1),
        prompts_path=PROMPTS,
        client=SimpleNamespace(messages=messages),
        sleep_fn=_noop_sleep,
    )

    concepts = llm.extract_concepts(CHUNK, CONTEXT)

    assert [c.name for c in concepts] == ["Ser"]
    assert messages.kwargs["model"] == "claude-test"
    assert "language-teaching" in str(messages.kwargs["system"])


def test_missing_prompt_file_raises(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        ConceptLLM(prompts_path=tmp_path / "missing.yaml")
