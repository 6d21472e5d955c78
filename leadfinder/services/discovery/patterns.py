"""Email-pattern inference and template application."""

from __future__ import annotations

import logging
import re
import time
import unicodedata
from collections.abc import Sequence
from typing import Any, Final, Protocol

from pydantic import BaseModel, Field, ValidationError, field_validator

from leadfinder.clients.llm import InferenceError, TextInferenceModel
from leadfinder.clients.searxng import SearxngError
from leadfinder.config import settings
from leadfinder.models.discovery import Company, EmailPattern, SearchResult
from leadfinder.observability.metrics import metrics

logger = logging.getLogger(__name__)

FALLBACK_LOCAL_PART: Final = "firstname.lastname"
EVIDENCE_MAX_CHARS: Final = 1000
EVIDENCE_QUERY_TEMPLATE: Final = "site:rocketreach.co OR site:leadiq.com {name} email format"

# Conventions tried after the company pattern, most common first.
ALTERNATE_LOCAL_PARTS: Final[tuple[str, ...]] = (
    "firstname.lastname",
    "firstname",
    "flastname",
    "firstnamelastname",
    "f.lastname",
    "firstname_lastname",
    "firstnamel",
    "lastname.firstname",
)

_TOKEN = re.compile(r"firstname|lastname|first|last|f|l|[._\-+]|\d+")
_LOCAL_PART = re.compile(r"(?:firstname|lastname|first|last|f|l|[._\-+]|\d+)+")
_EMAIL = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
_NAME_TOKENS: Final = {"firstname", "lastname", "f", "l"}
_ALIASES: Final = {"first": "firstname", "last": "lastname"}


class SearchAggregator(Protocol):
    async def query(self, search: str) -> list[SearchResult]:
        ...


class PatternSuggestion(BaseModel):
    company_id: str
    template: str = ""
    confidence: float | None = None
    unsure: bool = False

    @field_validator("company_id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(int(value))
        return value


class PatternBatch(BaseModel):
    """Raw model answer; entries are validated one by one."""

    patterns: list[Any] = Field(default_factory=list)


PATTERN_SYSTEM_PROMPT: Final = (
    "You identify corporate email address formats. Reply with a single JSON object and nothing else."
)

PATTERN_PROMPT_HEADER: Final = """Identify the single most likely email address template for each company below.

{rows}

Write templates with these placeholders only: firstname, lastname, f (first initial),
l (last initial), joined directly or with ".", "_" or "-", followed by "@domain.com".
Examples: firstname.lastname@domain.com, firstname@domain.com, flastname@domain.com,
firstnamelastname@domain.com, lastname.firstname@domain.com.

Prefer formats shown in the evidence. Without evidence, use what you know about the
company only if you are confident. If you are under 90% sure, set "template" to "unsure"
and "unsure" to true. Never invent a format.

Return JSON: {{"patterns": [{{"company_id": "<ID>", "template": "<template>", "confidence": <0-1>, "unsure": <bool>}}]}}
"""


def canonicalize_template(template: str | None, domain: str) -> str | None:
    """Normalize a model-produced template and bind it to ``domain``.

    Returns ``None`` for ``unsure`` answers and anything that is not a local part
    built from known placeholders, separators and digits.
    """
    if not template:
        return None
    compact = re.sub(r"\s+", "", template).lower().replace("{", "").replace("}", "")
    if not compact or compact.startswith("unsure"):
        return None
    tokens = _tokenize(compact.split("@", 1)[0])
    if tokens is None or not _NAME_TOKENS.intersection(tokens):
        return None
    return f"{''.join(tokens)}@{domain}"


def _tokenize(local: str) -> list[str] | None:
    if not local or not _LOCAL_PART.fullmatch(local):
        return None
    tokens = _TOKEN.findall(local)
    if "".join(tokens) != local:
        return None
    return [_ALIASES.get(token, token) for token in tokens]


def normalize_name_part(value: str | None) -> str:
    """ASCII-fold, lowercase and keep alphanumerics only."""
    if not value:
        return ""
    folded = unicodedata.normalize("NFKD", value).encode("ascii", "ignore").decode("ascii").lower()
    return re.sub(r"[^a-z0-9]", "", folded)


def apply_template(template: str, first: str | None, last: str | None) -> str | None:
    """Render ``template`` for a person, or ``None`` when that is impossible."""
    if not template or "@" not in template:
        return None
    local_template, domain = template.rsplit("@", 1)
    tokens = _tokenize(local_template.lower())
    if tokens is None:
        return None
    first_n = normalize_name_part(first)
    last_n = normalize_name_part(last)
    pieces: list[str] = []
    for token in tokens:
        if token in ("firstname", "f"):
            if not first_n:
                return None
            pieces.append(first_n if token == "firstname" else first_n[0])
        elif token in ("lastname", "l"):
            if not last_n:
                return None
            pieces.append(last_n if token == "lastname" else last_n[0])
        else:
            pieces.append(token)
    local = "".join(pieces)
    address = f"{local}@{domain.strip().lower()}"
    if local.startswith(".") or local.endswith(".") or ".." in local:
        return None
    return address if _EMAIL.match(address) else None


def fallback_pattern(company: Company, *, confidence: float | None = None, snippet: str = "") -> EmailPattern:
    return EmailPattern(
        company_id=company.id or "",
        template=f"{FALLBACK_LOCAL_PART}@{company.normalized_domain}",
        confidence=settings.pattern_fallback_confidence if confidence is None else confidence,
        source_snippet=snippet,
        source="fallback_default",
    )


def select_evidence(results: Sequence[SearchResult], company_name: str) -> str:
    """Pick the first result that looks like it describes an email format."""
    name = company_name.lower()
    for result in results:
        title = result.title.lower()
        content = result.content.lower()
        if "email" in title or "email" in content or "@" in content or (name and name in title):
            return f"{result.title} {result.content}".strip()[:EVIDENCE_MAX_CHARS]
    return ""


class EmailPatternEngine:
    """Infers one email template per company, falling back deterministically."""

    def __init__(
        self,
        *,
        model: TextInferenceModel | None,
        search: SearchAggregator | None = None,
        model_name: str | None = None,
        default_confidence: float | None = None,
        fallback_confidence: float | None = None,
    ) -> None:
        self._model = model
        self._search = search
        self._model_name = model_name or settings.pattern_model
        self._default_confidence = (
            default_confidence if default_confidence is not None else settings.pattern_default_confidence
        )
        self._fallback_confidence = (
            fallback_confidence if fallback_confidence is not None else settings.pattern_fallback_confidence
        )

    async def gather_evidence(self, company: Company) -> str:
        if self._search is None or not company.name.strip():
            return ""
        try:
            results = await self._search.query(EVIDENCE_QUERY_TEMPLATE.format(name=company.name))
        except SearxngError as exc:
            metrics.increment("patterns.evidence_failed", tags={"code": exc.code})
            logger.warning(
                "patterns.evidence_failed",
                extra={"company": company.name, "code": exc.code},
            )
            return ""
        evidence = select_evidence(results, company.name)
        logger.debug(
            "patterns.evidence",
            extra={"company": company.name, "results": len(results), "found": bool(evidence)},
        )
        return evidence

    async def infer(self, company: Company, evidence_snippet: str) -> EmailPattern:
        return (await self.infer_many([(company, evidence_snippet)]))[0]

    async def infer_many(self, items: Sequence[tuple[Company, str]]) -> list[EmailPattern]:
        """Infer patterns for a batch in one model call, preserving input order."""
        if not items:
            return []
        start = time.perf_counter()
        suggestions = await self._suggest(items)
        patterns: list[EmailPattern] = []
        for index, (company, evidence) in enumerate(items):
            pattern = self._to_pattern(company, evidence, suggestions.get(str(index + 1)))
            metrics.increment("patterns.inferred", tags={"source": pattern.source})
            patterns.append(pattern)
        elapsed_ms = (time.perf_counter() - start) * 1000
        metrics.timing("patterns.latency_ms", elapsed_ms, tags={"batch": len(items)})
        return patterns

    async def _suggest(self, items: Sequence[tuple[Company, str]]) -> dict[str, PatternSuggestion]:
        if self._model is None:
            return {}
        rows = "\n".join(
            f"ID: {index + 1} | Name: {company.name} | Domain: {company.normalized_domain} "
            f"| Evidence: {evidence.strip() or 'none'}"
            for index, (company, evidence) in enumerate(items)
        )
        try:
            batch = await self._model.complete(
                PATTERN_PROMPT_HEADER.format(rows=rows),
                PatternBatch,
                system_prompt=PATTERN_SYSTEM_PROMPT,
                model=self._model_name,
            )
        except InferenceError as exc:
            metrics.increment("patterns.model_failed", tags={"code": exc.code})
            logger.warning("patterns.model_failed", extra={"code": exc.code, "batch": len(items)})
            return {}
        suggestions: dict[str, PatternSuggestion] = {}
        for entry in batch.patterns:
            try:
                suggestion = PatternSuggestion.model_validate(entry)
            except ValidationError as exc:
                metrics.increment("patterns.entry_invalid")
                logger.warning("patterns.entry_invalid", extra={"errors": exc.error_count()})
                continue
            suggestions[suggestion.company_id.strip()] = suggestion
        return suggestions

    def _to_pattern(
        self, company: Company, evidence: str, suggestion: PatternSuggestion | None
    ) -> EmailPattern:
        snippet = evidence[:EVIDENCE_MAX_CHARS]
        template = None
        if suggestion is not None and not suggestion.unsure:
            template = canonicalize_template(suggestion.template, company.normalized_domain)
        if template is None or not company.normalized_domain:
            return fallback_pattern(company, confidence=self._fallback_confidence, snippet=snippet)
        return EmailPattern(
            company_id=company.id or "",
            template=template,
            confidence=self._clamp(suggestion.confidence),
            source_snippet=snippet,
            source="search_inference" if evidence.strip() else "model_knowledge",
        )

    def _clamp(self, confidence: float | None) -> float:
        value = self._default_confidence if confidence is None else confidence
        floor = min(self._fallback_confidence + 0.01, 1.0)
        return max(floor, min(float(value), 1.0))
