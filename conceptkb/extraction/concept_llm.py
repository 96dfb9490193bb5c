"""LLM-backed concept extraction and similarity judgment.

Provider-agnostic wrapper over the OpenAI and Anthropic chat APIs. Prompts are
rendered from a YAML template file and responses are parsed into
:class:`ExtractedConcept` / :class:`SimilarityCandidate` models. The chat
client is passed in by the caller (or built once on first use).
"""

from __future__ import annotations

import json
import re
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import yaml
from loguru import logger

from conceptkb.errors import UpstreamError
from conceptkb.extraction.base import ExtractionContext
from conceptkb.extraction.concept_index import ConceptIndex
from conceptkb.normalization.fuzzy_matcher import FuzzyMatcher
from conceptkb.storage.schemas import (
    ConceptCategory,
    ConceptIndexEntry,
    ContentChunk,
    DifficultyLevel,
    ExtractedConcept,
    SimilarityCandidate,
)
from conceptkb.utils.config import LLMConfig, SimilarityConfig
from conceptkb.utils.llm_client import create_anthropic_client, create_openai_client

MIN_CONCEPTS_PER_CHUNK = 3
MAX_CONCEPTS_PER_CHUNK = 10


class ConceptLLM:
    """Concept extractor and similarity judge backed by a chat model."""

    def __init__(
        self,
        config: Optional[LLMConfig] = None,
        similarity_config: Optional[SimilarityConfig] = None,
        prompts_path: str | Path = "config/concept_prompts.yaml",
        *,
        client: Any = None,
        api_key: str | None = None,
        matcher: FuzzyMatcher | None = None,
        sleep_fn: Callable[[float], None] | None = None,
    ) -> None:
        self.config = config or LLMConfig()
        self.similarity_config = similarity_config or SimilarityConfig()
        self.prompts_path = Path(prompts_path)
        self.prompts = self._load_prompts(self.prompts_path)
        self._client = client
        self._api_key = api_key
        self._matcher = matcher or FuzzyMatcher()
        self._sleep = sleep_fn or time.sleep

        logger.info(
            "Initialized ConceptLLM",
            provider=self.config.provider,
            model=self.config.model,
            prompts=str(self.prompts_path),
        )

    @property
    def model_name(self) -> str:
        return self.config.model

    # -----------------------
    # Public API
    # -----------------------
    def extract_concepts(
        self, chunk: ContentChunk, context: ExtractionContext
    ) -> List[ExtractedConcept]:
        """Extract concepts from one chunk (retries per ``LLMConfig.retry_attempts``)."""
        system, user = self._render_prompt(
            "concept_extraction",
            {
                "chunk_text": chunk.content,
                "chunk_type": chunk.type,
                "document_title": context.title or context.document_id,
                "keywords": ", ".join(context.keywords) or "(none)",
                "min_concepts": MIN_CONCEPTS_PER_CHUNK,
                "max_concepts": MAX_CONCEPTS_PER_CHUNK,
            },
        )
        raw_response = self._call_llm(system=system, user=user, attempts=self.config.retry_attempts)
        return self._parse_concepts_response(raw_response, chunk)

    def judge_similarity(
        self, concept: ExtractedConcept, index: ConceptIndex
    ) -> List[SimilarityCandidate]:
        """Rank existing concepts similar to ``concept``.

        Single attempt: the similarity batch processor owns the retry budget.

        Raises:
            UpstreamError: If the model call fails or the response cannot be parsed.
        """
        if index.is_empty:
            return []

        candidates = index.candidates_for(
            concept, self.similarity_config.index_sample_size, matcher=self._matcher
        )
        system, user = self._render_prompt(
            "similarity_judgment",
            {
                "concept_name": concept.name,
                "concept_category": concept.category.value,
                "concept_description": concept.description,
                "concept_examples": "; ".join(concept.examples) or "(none)",
                "candidates": self._format_candidates(candidates),
                "min_similarity": self.similarity_config.min_similarity,
                "max_matches": self.similarity_config.max_matches,
            },
        )
        raw_response = self._call_llm(system=system, user=user, attempts=1)
        return self._parse_similarity_response(raw_response, candidates)

    # -----------------------
    # Prompt handling
    # -----------------------
    def _load_prompts(self, path: Path) -> Dict[str, Any]:
        if not path.exists():
            raise FileNotFoundError(f"Concept prompt template not found: {path}")
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Prompt template root must be a mapping/dict: {path}")
        return data

    def _render_prompt(self, key: str, context: Dict[str, Any]) -> Tuple[str, str]:
        if key not in self.prompts:
            raise KeyError(f"Prompt key not found in template: {key}")

        prompt = self.prompts.get(key) or {}
        system = str(prompt.get("system", "")).strip()
        user_template = str(prompt.get("user_template", "{chunk_text}"))

        try:
            user = user_template.format(**context)
        except KeyError as exc:
            missing = exc.args[0]
            raise KeyError(f"Missing placeholder '{missing}' in prompt context for '{key}'")
        return system, user

    def _format_candidates(self, candidates: Sequence[ConceptIndexEntry]) -> str:
        lines: List[str] = []
        for entry in candidates:
            examples = "; ".join(entry.examples[:3])
            lines.append(
                f"- id={entry.concept_id} | {entry.name} ({entry.category.value}, "
                f"{entry.difficulty.value}): {entry.description}"
                + (f" | examples: {examples}" if examples else "")
            )
        return "\n".join(lines) if lines else "[]"

    # -----------------------
    # LLM invocation
    # -----------------------
    def _call_llm(self, *, system: str, user: str, attempts: int) -> str:
        attempts = max(1, attempts)
        last_error: Exception | None = None

        logger.debug(f"Calling LLM using {self.config.provider}: {self.config.model}")

        for attempt in range(1, attempts + 1):
            try:
                if self.config.provider == "openai":
                    return self._call_openai(system=system, user=user)
                if self.config.provider == "anthropic":
                    return self._call_anthropic(system=system, user=user)
                raise ValueError(f"Unsupported LLM provider: {self.config.provider}")
            except Exception as exc:  # noqa: BLE001
                last_error = exc
                logger.warning(
                    "LLM request failed",
                    attempt=attempt,
                    max_attempts=attempts,
                    error=str(exc),
                )
                if attempt >= attempts:
                    break
                backoff = min(2 ** (attempt - 1), 8)
                self._sleep(backoff)

        raise UpstreamError(
            f"LLM request failed after {attempts} attempt(s): {last_error}",
            provider=self.config.provider,
            model=self.config.model,
        )

    def _get_client(self) -> Any:
        if self._client is None:
            if self.config.provider == "anthropic":
                self._client = create_anthropic_client(
                    api_key=self._api_key,
                    base_url=self.config.base_url,
                    timeout=self.config.timeout,
                )
            else:
                self._client = create_openai_client(
                    api_key=self._api_key,
                    base_url=self.config.base_url,
                    timeout=self.config.timeout,
                )
        return self._client

    def _call_openai(self, *, system: str, user: str) -> str:
        response = self._get_client().chat.completions.create(
            model=self.config.model,
            temperature=self.config.temperature,
            max_tokens=self.config.max_tokens,
            timeout=self.config.timeout,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
        )
        content = response.choices[0].message.content
        if isinstance(content, list):
            parts = []
            for item in content:
                if isinstance(item, dict):
                    parts.append(str(item.get("text", "")))
                else:
                    parts.append(str(item))
            return "\n".join(parts).strip()
        return str(content or "")

    def _call_anthropic(self, *, system: str, user: str) -> str:
        message = self._get_client().messages.create(
            model=self.config.model,
            timeout=self.config.timeout,
            system=system,
            temperature=self.config.temperature,
            messages=[{"role": "user", "content": user}],
            max_tokens=self.config.max_tokens,
        )
        parts = []
        for block in message.content:
            if getattr(block, "type", None) == "text":
                parts.append(getattr(block, "text", ""))
        return "\n".join(parts).strip()

    # -----------------------
    # Parsing helpers
    # -----------------------
    def _parse_concepts_response(
        self, response_text: str, chunk: ContentChunk
    ) -> List[ExtractedConcept]:
        data = self._extract_json(response_text)
        if data is None:
            logger.warning("Failed to parse LLM concept response as JSON", chunk_id=chunk.chunk_id)
            return []

        if isinstance(data, dict) and "concepts" in data:
            raw_concepts = data.get("concepts", [])
        elif isinstance(data, list):
            raw_concepts = data
        else:
            logger.warning("Unexpected concept response structure", chunk_id=chunk.chunk_id)
            return []

        concepts: List[ExtractedConcept] = []
        for item in raw_concepts:
            if not isinstance(item, dict):
                continue
            name = str(item.get("name") or "").strip()
            if not name:
                continue

            concepts.append(
                ExtractedConcept(
                    name=name,
                    category=self._parse_category(item.get("category")),
                    description=str(item.get("description", "") or "").strip(),
                    examples=self._string_list(item.get("examples")),
                    source_content=str(
                        item.get("sourceContent") or item.get("source_content") or ""
                    ).strip()
                    or chunk.content[:200],
                    confidence=self._clamp_confidence(item.get("confidence"), default=0.5),
                    suggested_difficulty=self._parse_difficulty(
                        item.get("suggestedDifficulty") or item.get("difficulty")
                    ),
                    suggested_tags=self._parse_tags(
                        item.get("suggestedTags") or item.get("tags")
                    ),
                )
            )
        return concepts

    def _parse_similarity_response(
        self, response_text: str, candidates: Sequence[ConceptIndexEntry]
    ) -> List[SimilarityCandidate]:
        data = self._extract_json(response_text)
        if isinstance(data, dict):
            data = data.get("matches", data.get("similarConcepts"))
        if not isinstance(data, list):
            raise UpstreamError("Similarity response is not a JSON list of matches")

        by_id = {entry.concept_id: entry for entry in candidates}
        matches: Dict[str, SimilarityCandidate] = {}
        for item in data:
            if not isinstance(item, dict):
                continue
            concept_id = str(item.get("conceptId") or item.get("concept_id") or "").strip()
            entry = by_id.get(concept_id)
            if entry is None:
                continue
            score = self._clamp_confidence(item.get("similarity") or item.get("score"))
            if score < self.similarity_config.min_similarity:
                continue
            if concept_id in matches and matches[concept_id].score >= score:
                continue
            matches[concept_id] = SimilarityCandidate(
                concept_id=concept_id,
                name=entry.name,
                score=score,
                justification=str(item.get("justification") or item.get("reasoning") or ""),
                category=entry.category,
                description=entry.description,
                examples=list(entry.examples),
                merge_suggestion=item.get("mergeSuggestion") or item.get("merge_suggestion"),
            )

        ranked = sorted(matches.values(), key=lambda m: m.score, reverse=True)
        return ranked[: self.similarity_config.max_matches]

    def _extract_json(self, text: str) -> Any:
        if not text:
            return None

        try:
            return json.loads(text)
        except json.JSONDecodeError:
            pass

        fenced = re.search(r"```(?:json)?\s*(.*?)```", text, flags=re.DOTALL)
        if fenced:
            try:
                return json.loads(fenced.group(1))
            except json.JSONDecodeError:
                pass

        match = re.search(r"(\{.*\}|\[.*\])", text, flags=re.DOTALL)
        if not match:
            return None

        try:
            return json.loads(match.group(1))
        except json.JSONDecodeError:
            return None

    def _parse_category(self, value: Any) -> ConceptCategory:
        try:
            return ConceptCategory(str(value or "").strip().lower())
        except ValueError:
            return ConceptCategory.GRAMMAR

    def _parse_difficulty(self, value: Any) -> DifficultyLevel:
        try:
            return DifficultyLevel(str(value or "").strip().upper())
        except ValueError:
            return DifficultyLevel.B1

    def _parse_tags(self, value: Any) -> List[str]:
        if not isinstance(value, list):
            return self._string_list(value)
        tags: List[str] = []
        for item in value:
            tag = item.get("tag") if isinstance(item, dict) else item
            if tag is not None and str(tag).strip():
                tags.append(str(tag).strip())
        return tags

    def _string_list(self, value: Any) -> List[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [value.strip()] if value.strip() else []
        if isinstance(value, Sequence):
            return [str(v).strip() for v in value if str(v).strip()]
        return []

    def _clamp_confidence(self, value: Any, default: float = 0.0) -> float:
        try:
            score = float(value)
        except (TypeError, ValueError):
            return default
        return max(0.0, min(score, 1.0))
