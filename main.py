"""CLI entry point for the dining search decision core."""

import argparse
import asyncio
import json
import logging
import sys
import time
import uuid
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from dining_search.core.config import Settings
from dining_search.core.db import SQLiteJobStore, init_db
from dining_search.core.errors import DiningSearchError
from dining_search.core.schemas import FinalFilters, IntentSignals, LatLng, PlaceCandidate
from dining_search.pipeline.invariants import RankingContext, enforce_invariants
from dining_search.pipeline.orchestrator import SearchOrchestrator, SearchRequest
from dining_search.pipeline.ranker import rank_results, score_breakdown
from dining_search.pipeline.relax import apply_relaxation_cascade
from dining_search.pipeline.soft_filters import apply_soft_filters
from dining_search.pipeline.weights import RULE_DELTAS, WeightContext, resolve_weights
from dining_search.providers.fixture import FixedIntentProvider, FixturePlacesProvider

logger = logging.getLogger(__name__)


class RankInput(BaseModel):
    """Offline ranking input: a candidate pool plus the signals to rank it with."""

    candidates: list[PlaceCandidate]
    intent: IntentSignals = Field(default_factory=IntentSignals)
    filters: FinalFilters = Field(default_factory=FinalFilters)
    user_location: LatLng | None = None
    limit: int = Field(default=20, ge=1)


class SearchInput(RankInput):
    """Full pipeline input: the candidate pool stands in for the places provider."""

    query: str
    session_id: str = "cli"
    idempotency_key: str | None = None
    ui_language: str | None = None


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Dining search decision core - rank candidate pools and inspect weights",
    )
    subparsers = parser.add_subparsers(dest="command")

    # --- rank subcommand ---
    rank_parser = subparsers.add_parser("rank", help="Filter, relax and rank a candidate pool")
    rank_parser.add_argument("input", help="Path to a JSON file with candidates, intent and filters")
    rank_parser.add_argument(
        "--explain",
        action="store_true",
        help="Include a per-candidate score breakdown",
    )

    # --- weights subcommand ---
    weights_parser = subparsers.add_parser("weights", help="Print resolved ranking weights for an intent")
    weights_parser.add_argument(
        "--intent",
        help="Path to an intent JSON file (default: no intent flags)",
    )
    weights_parser.add_argument(
        "--has-location",
        action="store_true",
        help="Resolve as if the user location is known",
    )

    # --- search subcommand ---
    search_parser = subparsers.add_parser(
        "search",
        help="Run the full pipeline (dedup, requery, relax, rank) against a fixture pool",
    )
    search_parser.add_argument("input", help="Path to a JSON file with query, candidates and intent")

    # --- dry-run subcommand ---
    subparsers.add_parser("dry-run", help="Validate config and show what the engines would use")

    for sub in (rank_parser, weights_parser, search_parser, subparsers.choices["dry-run"]):
        sub.add_argument(
            "--config",
            default="config/settings.yaml",
            help="Path to settings YAML file (default: config/settings.yaml)",
        )
        sub.add_argument(
            "--verbose", "-v",
            action="store_true",
            help="Enable verbose (DEBUG) logging",
        )

    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        sys.exit(1)
    return args


def setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def load_settings(path: str) -> Settings:
    """Load settings, falling back to defaults when the default path is absent."""
    if path == "config/settings.yaml" and not Path(path).exists():
        logger.info("No config at %s, using defaults", path)
        return Settings()
    return Settings.from_yaml(path)


def cmd_rank(args: argparse.Namespace, settings: Settings) -> dict[str, Any]:
    """Run soft filters, relaxation, weights and ranking over a JSON pool."""
    data = RankInput.model_validate_json(Path(args.input).read_text())

    cascade = apply_relaxation_cascade(data.candidates, data.filters, apply_soft_filters, settings.relax)
    survivors: list[PlaceCandidate] = cascade.final_candidates

    has_location = data.user_location is not None
    resolution = resolve_weights(WeightContext.from_intent(data.intent, has_location), settings.ranking)
    enforcement = enforce_invariants(
        resolution.weights,
        RankingContext(
            has_user_location=has_location,
            cuisine_key=data.intent.cuisine_key,
            open_now_requested=data.intent.open_now_requested,
            has_cuisine_scores=any(c.cuisine_score is not None for c in survivors),
        ),
        renormalize=settings.ranking.renormalize_after_enforcement,
    )
    weights = enforcement.enforced_weights
    ranked = rank_results(survivors, weights, data.user_location)[: data.limit]

    output: dict[str, Any] = {
        "weights": weights.model_dump(),
        "reasonCodes": list(resolution.reason_codes),
        "appliedRules": list(enforcement.applied_rules),
        "relaxSteps": [s.model_dump() for s in cascade.steps],
        "results": [c.place_id for c in ranked],
    }
    if args.explain:
        output["breakdown"] = [
            score_breakdown(c, weights, data.user_location).model_dump() for c in ranked
        ]
    return output


def cmd_weights(args: argparse.Namespace, settings: Settings) -> dict[str, Any]:
    intent = IntentSignals()
    if args.intent:
        intent = IntentSignals.model_validate_json(Path(args.intent).read_text())
    resolution = resolve_weights(WeightContext.from_intent(intent, args.has_location), settings.ranking)
    return resolution.model_dump(mode="json")


def now_ms() -> int:
    return int(time.time() * 1000)


async def cmd_search(args: argparse.Namespace, settings: Settings) -> dict[str, Any]:
    """Drive the orchestrator with fixture providers and the configured job store."""
    data = SearchInput.model_validate_json(Path(args.input).read_text())
    conn = init_db(settings.database.path)
    try:
        orchestrator = SearchOrchestrator(
            settings,
            SQLiteJobStore(conn),
            FixturePlacesProvider(data.candidates),
            FixedIntentProvider(data.intent),
            clock=now_ms,
        )
        request = SearchRequest(
            request_id=uuid.uuid4().hex,
            session_id=data.session_id,
            query=data.query,
            idempotency_key=data.idempotency_key,
            user_location=data.user_location,
            filters=data.filters,
            limit=data.limit,
            ui_language=data.ui_language,
        )
        response = await orchestrator.run(request, now=now_ms())
    finally:
        conn.close()
    return response.model_dump(mode="json")


def dry_run(settings: Settings) -> None:
    """Print the effective configuration without touching any provider."""
    conn = init_db(settings.database.path)
    jobs = conn.execute("SELECT COUNT(*) FROM jobs").fetchone()[0]
    pools = conn.execute("SELECT COUNT(*) FROM candidate_pools").fetchone()[0]
    conn.close()

    print(f"[DRY RUN] Job store: {settings.database.path} ({jobs} jobs, {pools} cached pools)")
    print(f"[DRY RUN] Dedup: running max age {settings.dedup.running_max_age_ms}ms, "
          f"success fresh window {settings.dedup.success_fresh_window_ms}ms")
    print(f"[DRY RUN] Requery: location {settings.requery.location_change_threshold_m}m, "
          f"radius +{settings.requery.radius_increase_threshold_pct}%, "
          f"exhaustion floor {settings.requery.pool_exhaustion_floor}")
    print(f"[DRY RUN] Relax: {settings.relax.max_attempts} attempts, "
          f"min acceptable {settings.relax.min_acceptable}, "
          f"hard constraints {settings.relax.hard_constraints or 'none'}")
    print(f"[DRY RUN] Ranking: strategy {settings.ranking.strategy}, "
          f"clamp [{settings.ranking.min_weight}, {settings.ranking.max_weight}]")

    baseline = resolve_weights(WeightContext(), settings.ranking)
    print(f"  Baseline: {baseline.weights.model_dump()}")
    if settings.ranking.strategy == "rules":
        for rule in RULE_DELTAS:
            print(f"  {rule}: {RULE_DELTAS[rule]}")

    print(f"[DRY RUN] Languages: {', '.join(settings.language.supported)} "
          f"(default {settings.language.default})")


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    setup_logging(args.verbose)

    try:
        settings = load_settings(args.config)
    except (FileNotFoundError, ValueError) as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        sys.exit(1)

    try:
        if args.command == "rank":
            print(json.dumps(cmd_rank(args, settings), indent=2))
        elif args.command == "weights":
            print(json.dumps(cmd_weights(args, settings), indent=2))
        elif args.command == "search":
            print(json.dumps(asyncio.run(cmd_search(args, settings)), indent=2))
        else:
            dry_run(settings)
    except (FileNotFoundError, ValidationError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except DiningSearchError:
        # Internal invariant failures are logged, never echoed.
        logger.exception("Internal error while running '%s'", args.command)
        print("Error: internal error", file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
