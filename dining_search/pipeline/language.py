"""Language context threaded through every pipeline stage.

``assistant_language`` and ``assistant_language_confidence`` are fixed by
the first classification stage and never change afterwards. Later stages
may only move ``ui_language``, ``provider_language`` and ``region``.

Every user-facing message must be declared in ``assistant_language`` and
every provider call in ``provider_language``; a mismatch raises
LanguageContractViolation.
"""

import logging
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from dining_search.core.config import LanguageConfig
from dining_search.core.errors import LanguageContractViolation

logger = logging.getLogger(__name__)

OTHER = "other"

IMMUTABLE_FIELDS = ("assistant_language", "assistant_language_confidence")
MUTABLE_FIELDS = ("ui_language", "provider_language", "region")


class LangCtx(BaseModel):
    model_config = ConfigDict(frozen=True)

    # Set once, never changed
    assistant_language: str
    assistant_language_confidence: float = Field(ge=0.0, le=1.0)

    # Stage-updatable
    ui_language: str
    provider_language: str
    region: str


class LanguageVerification(BaseModel):
    model_config = ConfigDict(frozen=True)

    allowed: bool
    expected_language: str
    actual_language: str
    source: str
    was_enforced: bool
    warning: str | None = None


def normalize_language(code: str | None, config: LanguageConfig | None = None) -> str:
    """Map a raw code to a supported language, ``other``, or the default when missing.

    >>> normalize_language("RU-ru")
    'ru'
    """
    config = config or LanguageConfig()
    if not code:
        return config.default
    short = code.strip().lower()[:2]
    if short in config.supported:
        return short
    return OTHER


def init_lang_ctx(
    assistant_language: str,
    assistant_language_confidence: float,
    region: str = "IL",
    config: LanguageConfig | None = None,
) -> LangCtx:
    """Create the context at the first classification stage.

    An unsupported language keeps the ``other`` marker as the assistant
    language while UI and provider languages fall back to the default.
    """
    config = config or LanguageConfig()
    if not 0.0 <= assistant_language_confidence <= 1.0:
        msg = f"Invalid assistant_language_confidence: {assistant_language_confidence} (must be 0-1)"
        raise ValueError(msg)

    language = normalize_language(assistant_language, config)
    fallback = normalize_facing_language(language, config)
    ctx = LangCtx(
        assistant_language=language,
        assistant_language_confidence=assistant_language_confidence,
        ui_language=fallback,
        provider_language=fallback,
        region=region,
    )
    logger.debug(
        "Language context initialised: assistant=%s (%.2f) ui=%s provider=%s region=%s",
        ctx.assistant_language, ctx.assistant_language_confidence,
        ctx.ui_language, ctx.provider_language, ctx.region,
    )
    return ctx


def update_lang_ctx(ctx: LangCtx, updates: dict[str, Any], stage: str) -> LangCtx:
    """Return a copy with the mutable fields in ``updates`` applied.

    Raises:
        LanguageContractViolation: If ``updates`` would change an immutable field.
        ValueError: If ``updates`` names a field LangCtx does not have.
    """
    unknown = set(updates) - set(IMMUTABLE_FIELDS) - set(MUTABLE_FIELDS)
    if unknown:
        msg = f"Unknown language context field(s): {', '.join(sorted(unknown))}"
        raise ValueError(msg)

    assert_lang_ctx_immutable(ctx, updates, stage)
    mutable = {k: v for k, v in updates.items() if k in MUTABLE_FIELDS}
    updated = ctx.model_copy(update=mutable)
    logger.debug("Language context updated at %s: %s", stage, mutable)
    return updated


def assert_lang_ctx_immutable(original: LangCtx, received: dict[str, Any], stage: str) -> None:
    """Raise if ``received`` carries a different value for an immutable field."""
    for field in IMMUTABLE_FIELDS:
        if field in received and received[field] != getattr(original, field):
            expected = getattr(original, field)
            actual = received[field]
            msg = f"Stage {stage} attempted to change {field}: {expected} -> {actual}"
            logger.error("Language contract violation: %s", msg)
            raise LanguageContractViolation(msg, stage=stage, expected=expected, actual=actual)


def normalize_facing_language(code: str | None, config: LanguageConfig | None = None) -> str:
    """Like normalize_language, but unsupported codes fall back to the default.

    UI and provider languages must always be a concrete supported code;
    only ``assistant_language`` may carry the ``other`` marker.
    """
    config = config or LanguageConfig()
    language = normalize_language(code, config)
    return config.default if language == OTHER else language


def _declared_language(code: str | None, config: LanguageConfig | None) -> str | None:
    # Undeclared stays None and never matches.
    if not code:
        return None
    return normalize_language(code, config)


def assert_assistant_language(
    ctx: LangCtx,
    payload_language: str | None,
    context: str = "unknown",
    config: LanguageConfig | None = None,
) -> None:
    """Raise unless the message is declared in ``ctx.assistant_language``.

    ``config`` must be the LanguageConfig the context was created with.
    """
    actual = _declared_language(payload_language, config)
    if actual != ctx.assistant_language:
        msg = f"Assistant message language mismatch: expected {ctx.assistant_language}, got {actual} (context: {context})"
        logger.error("Language contract violation: %s", msg)
        raise LanguageContractViolation(msg, stage=context, expected=ctx.assistant_language, actual=actual)


def assert_provider_language(
    ctx: LangCtx,
    provider_language: str | None,
    provider: str = "places",
    config: LanguageConfig | None = None,
) -> None:
    actual = _declared_language(provider_language, config)
    if actual != ctx.provider_language:
        msg = f"Provider language mismatch: expected {ctx.provider_language}, got {actual} (provider: {provider})"
        logger.error("Language contract violation: %s", msg)
        raise LanguageContractViolation(msg, stage=provider, expected=ctx.provider_language, actual=actual)


def validate_lang_ctx(ctx: LangCtx, config: LanguageConfig | None = None) -> None:
    """Raise ValueError unless every language field is a known code and region is set."""
    config = config or LanguageConfig()
    valid = {*config.supported, OTHER}
    for field in ("assistant_language", "ui_language", "provider_language"):
        value = getattr(ctx, field)
        if value not in valid:
            msg = f"Invalid {field}: {value}"
            raise ValueError(msg)
    if not ctx.region:
        msg = "Language context is missing a region"
        raise ValueError(msg)


def verify_assistant_language(
    ctx: LangCtx | None,
    payload_language: str | None,
    *,
    context: str = "unknown",
    stored_language: str | None = None,
    query_language: str | None = None,
    ui_language: str | None = None,
    config: LanguageConfig | None = None,
) -> LanguageVerification:
    """Check a message language, degrading gracefully when no context exists.

    With a context the check is strict and raises on mismatch. Without
    one, the expected language comes from the stored context, then the
    query language, then the UI language; a mismatch is reported in the
    result but never raised.
    """
    actual = normalize_language(payload_language, config)

    if ctx is not None:
        assert_assistant_language(ctx, payload_language, context, config)
        return LanguageVerification(
            allowed=True,
            expected_language=ctx.assistant_language,
            actual_language=actual,
            source="lang_ctx_strict",
            was_enforced=True,
        )

    for source, candidate in (
        ("stored_context", stored_language),
        ("query_language", query_language),
        ("ui_language", ui_language),
    ):
        if candidate:
            expected = normalize_language(candidate, config)
            break
    else:
        logger.warning("Could not verify %s message language %s: no language context", context, actual)
        return LanguageVerification(
            allowed=True,
            expected_language="unknown",
            actual_language=actual,
            source="no_fallback_sources",
            was_enforced=False,
            warning="Could not derive expected language",
        )

    if expected == actual:
        return LanguageVerification(
            allowed=True,
            expected_language=expected,
            actual_language=actual,
            source=source,
            was_enforced=False,
        )

    logger.warning("Language mismatch via %s for %s: expected %s, got %s", source, context, expected, actual)
    return LanguageVerification(
        allowed=True,
        expected_language=expected,
        actual_language=actual,
        source=source,
        was_enforced=False,
        warning=f"Derived expected={expected} but got actual={actual}",
    )
