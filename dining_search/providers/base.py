"""Abstract base classes for the external collaborators the orchestrator drives."""

from abc import ABC, abstractmethod

from dining_search.core.schemas import IntentSignals, PlaceCandidate, SearchContext


class PlacesProvider(ABC):
    """Base class that every places backend must implement."""

    @property
    @abstractmethod
    def provider_id(self) -> str:
        """Unique identifier for this provider (e.g. 'google_places')."""

    @abstractmethod
    async def search(self, context: SearchContext, language: str) -> list[PlaceCandidate]:
        """Run a search and return raw (unfiltered, unranked) candidates in provider order."""


class IntentProvider(ABC):
    """Classifies a raw query into structured intent signals."""

    @abstractmethod
    async def classify(self, query: str) -> IntentSignals:
        """Return route, intent flags and detected language for ``query``."""
