"""Providers that serve a fixed candidate pool and intent, for offline pipeline runs."""

import logging

from dining_search.core.schemas import IntentSignals, PlaceCandidate, SearchContext
from dining_search.providers.base import IntentProvider, PlacesProvider

logger = logging.getLogger(__name__)


class FixturePlacesProvider(PlacesProvider):
    """Returns the same candidates, in the same order, for every search."""

    def __init__(self, candidates: list[PlaceCandidate], provider_id: str = "fixture") -> None:
        self._candidates = list(candidates)
        self._provider_id = provider_id

    @property
    def provider_id(self) -> str:
        return self._provider_id

    async def search(self, context: SearchContext, language: str) -> list[PlaceCandidate]:
        logger.info(
            "Serving %d fixture candidates for '%s' (route=%s, language=%s)",
            len(self._candidates), context.query, context.route.value, language,
        )
        return list(self._candidates)


class FixedIntentProvider(IntentProvider):
    def __init__(self, intent: IntentSignals) -> None:
        self._intent = intent

    async def classify(self, query: str) -> IntentSignals:
        logger.debug("Fixed intent for '%s': %s", query, self._intent.model_dump(exclude_defaults=True))
        return self._intent
