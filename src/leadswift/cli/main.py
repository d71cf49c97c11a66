"""Main CLI entry point."""

import argparse
import json
import logging
import sys
import time
from pathlib import Path


def main(argv: list[str] | None = None) -> None:
    """Parse args and dispatch to subcommands."""
    parser = argparse.ArgumentParser(prog="leadswift", description="LeadSwift application automation engine")
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity (default: WARNING)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    # score
    score_parser = subparsers.add_parser("score", help="Score opportunities against a profile")
    score_parser.add_argument("--profile", type=Path, required=True, help="Path to profile YAML")
    score_parser.add_argument(
        "--input", type=Path, required=True, help="JSON file with a list of opportunities"
    )
    score_parser.add_argument("--config", type=Path, default=None, help="Engine config YAML")
    score_parser.add_argument("--output", type=Path, default=None, help="Write results to file")

    # filter
    filter_parser = subparsers.add_parser("filter", help="Score and filter opportunities")
    filter_parser.add_argument("--profile", type=Path, required=True, help="Path to profile YAML")
    filter_parser.add_argument(
        "--input", type=Path, required=True, help="JSON file with a list of opportunities"
    )
    filter_parser.add_argument("--config", type=Path, default=None, help="Engine config YAML")
    filter_parser.add_argument("--output", type=Path, default=None, help="Write results to file")
    filter_parser.add_argument(
        "--show-explanations",
        action="store_true",
        help="Include every opportunity with its rule explanations",
    )

    # run
    run_parser = subparsers.add_parser(
        "run", help="Submit opportunities and drain the queue once (generate + send)"
    )
    run_parser.add_argument("--profile", type=Path, required=True, help="Path to profile YAML")
    run_parser.add_argument(
        "--input", type=Path, required=True, help="JSON file with a list of opportunities"
    )
    run_parser.add_argument("--config", type=Path, default=None, help="Engine config YAML")
    run_parser.add_argument(
        "--db", type=Path, default=None, help="SQLite database (overrides config db_path)"
    )
    run_parser.add_argument(
        "--priority", default="medium", choices=["high", "medium", "low"], help="Queue priority"
    )
    run_parser.add_argument("--output", type=Path, default=None, help="Write results to file")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Run the engine loop until interrupted")
    serve_parser.add_argument("--config", type=Path, required=True, help="Engine config YAML")
    serve_parser.add_argument(
        "--db", type=Path, default=None, help="SQLite database (overrides config db_path)"
    )

    # pipelines
    pipelines_parser = subparsers.add_parser("pipelines", help="List stored pipelines")
    pipelines_parser.add_argument(
        "--db", type=Path, default=Path("leadswift.db"), help="Path to SQLite database"
    )
    pipelines_parser.add_argument("--status", type=str, default=None, help="Filter by status")
    pipelines_parser.add_argument(
        "action", choices=["list", "count"], nargs="?", default="list", help="List or count"
    )

    # track
    track_parser = subparsers.add_parser("track", help="Apply a delivery tracking event")
    track_parser.add_argument(
        "--db", type=Path, default=Path("leadswift.db"), help="Path to SQLite database"
    )
    track_parser.add_argument("--tracking-id", required=True, help="Tracking id from the sent email")
    track_parser.add_argument(
        "--event",
        required=True,
        choices=["opened", "clicked", "replied", "bounced", "unsubscribed"],
        help="Event kind",
    )

    # analytics
    analytics_parser = subparsers.add_parser("analytics", help="Pipeline conversion metrics")
    analytics_parser.add_argument(
        "--db", type=Path, default=Path("leadswift.db"), help="Path to SQLite database"
    )
    analytics_parser.add_argument(
        "--timeframe", choices=["week", "month", "quarter"], default=None, help="Restrict window"
    )
    analytics_parser.add_argument("--output", type=Path, default=None, help="Write results to file")

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    handlers = {
        "score": _run_score,
        "filter": _run_filter,
        "run": _run_run,
        "serve": _run_serve,
        "pipelines": _run_pipelines,
        "track": _run_track,
        "analytics": _run_analytics,
    }
    from leadswift.errors import LeadSwiftError

    try:
        handlers[args.command](args)
    except LeadSwiftError as e:
        raise SystemExit(f"Error: {e}")


def _emit(data: object, output: Path | None, summary: str) -> None:
    text = json.dumps(data, indent=2, default=str)
    if output:
        output.write_text(text, encoding="utf-8")
        print(f"{summary} (wrote to {output})")
    else:
        print(text)


def _load_config(path: Path | None):
    from leadswift.config import EngineConfig

    if path is None:
        return EngineConfig().with_env()
    return EngineConfig.from_yaml(path)


def _load_opportunities(path: Path) -> list:
    from leadswift.models.opportunity import Opportunity

    data = json.loads(path.read_text())
    if isinstance(data, dict):
        data = data.get("opportunities", [])
    return [Opportunity.model_validate(o) for o in data]


def _run_score(args: argparse.Namespace) -> None:
    """Run score command."""
    from leadswift.models.profile import Profile
    from leadswift.scoring import score_many

    config = _load_config(args.config)
    profile = Profile.from_yaml(args.profile)
    opportunities = _load_opportunities(args.input)
    results = score_many(
        opportunities,
        profile,
        priority_industries=config.priority_industries,
        minimum_score=config.minimum_match_score,
    )
    ranked = sorted(results, key=lambda r: -r.score)
    _emit(
        [r.model_dump(mode="json") for r in ranked],
        args.output,
        f"Scored {len(ranked)} opportunities",
    )


def _run_filter(args: argparse.Namespace) -> None:
    """Run filter command."""
    from leadswift.filtering import FilterEngine
    from leadswift.models.profile import Profile
    from leadswift.scoring import score_match

    config = _load_config(args.config)
    profile = Profile.from_yaml(args.profile)
    opportunities = _load_opportunities(args.input)
    if not opportunities:
        print("No opportunities in input.", file=sys.stderr)
        raise SystemExit(1)

    engine = FilterEngine(config)
    seen: set[str] = set()
    rows = []
    for opp in opportunities:
        match = score_match(
            opp,
            profile,
            priority_industries=config.priority_industries,
            minimum_score=config.minimum_match_score,
        )
        verdict = engine.evaluate(opp, profile, match, active_ids=seen)
        if verdict.accept:
            seen.add(opp.id)
        rows.append((opp, verdict))

    passed = [(o, v) for o, v in rows if v.accept]
    if args.show_explanations:
        data = [
            {
                "opportunity": o.model_dump(mode="json"),
                "accept": v.accept,
                "reason": v.reason,
                "score": v.match.score,
                "explanations": v.explanations,
            }
            for o, v in rows
        ]
    else:
        data = [o.model_dump(mode="json") for o, _ in passed]
    _emit(data, args.output, f"Filtered: {len(passed)} passed of {len(opportunities)}")


def _build_engine(args: argparse.Namespace):
    from leadswift.engine import AutomationEngine

    config = _load_config(args.config)
    if args.db is not None:
        config = config.model_copy(update={"db_path": str(args.db)})
    return AutomationEngine(config, config_path=args.config)


def _run_run(args: argparse.Namespace) -> None:
    """Run command: submit every opportunity, then process the queue until empty."""
    from leadswift.models.profile import Profile

    profile = Profile.from_yaml(args.profile)
    opportunities = _load_opportunities(args.input)
    engine = _build_engine(args)
    try:
        engine.restore()
        submissions = []
        for opp in opportunities:
            result = engine.submit_opportunity(opp, profile, args.priority)
            submissions.append({"opportunity_id": opp.id, **result.model_dump(mode="json")})
        outcomes = []
        while (outcome := engine.process_next()) is not None:
            outcomes.append(outcome.__dict__)
        data = {
            "submissions": submissions,
            "dispatched": outcomes,
            "status": engine.status().model_dump(mode="json"),
        }
        sent = sum(1 for o in outcomes if o["sent"])
        _emit(data, args.output, f"Submitted {len(submissions)}, sent {sent}")
    finally:
        engine.close()


def _run_serve(args: argparse.Namespace) -> None:
    """Run serve command."""
    engine = _build_engine(args)
    engine.start()
    print("LeadSwift engine running. Press Ctrl+C to stop.", file=sys.stderr)
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        pass
    finally:
        engine.close()


def _run_pipelines(args: argparse.Namespace) -> None:
    """Run pipelines command."""
    from leadswift.store import PipelineStore

    store = PipelineStore(args.db)
    try:
        pipelines = store.list_pipelines(status=args.status)
    finally:
        store.close()
    if args.action == "count":
        print(len(pipelines))
        return
    print(json.dumps([p.model_dump(mode="json") for p in pipelines], indent=2, default=str))


def _run_track(args: argparse.Namespace) -> None:
    """Run track command."""
    from leadswift.config import EngineConfig
    from leadswift.engine import AutomationEngine

    engine = AutomationEngine(EngineConfig(db_path=str(args.db)))
    try:
        engine.restore()
        pipeline = engine.on_tracking_event(args.tracking_id, args.event)
        print(f"Pipeline {pipeline.id}: {pipeline.status.value}")
    finally:
        engine.close()


def _run_analytics(args: argparse.Namespace) -> None:
    """Run analytics command."""
    from datetime import datetime, timezone

    from leadswift.analytics import compute_pipeline_metrics
    from leadswift.store import PipelineStore

    store = PipelineStore(args.db)
    try:
        pipelines = store.list_pipelines()
        opportunities = {}
        for p in pipelines:
            opp = store.get_opportunity(p.opportunity_id)
            if opp is not None:
                opportunities[opp.id] = opp
    finally:
        store.close()
    metrics = compute_pipeline_metrics(
        pipelines,
        opportunities,
        timeframe=args.timeframe,
        now=datetime.now(timezone.utc),
    )
    _emit(metrics.model_dump(mode="json"), args.output, "Computed metrics")


if __name__ == "__main__":
    main()
