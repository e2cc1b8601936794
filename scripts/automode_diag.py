"""Auto-mode diagnostics CLI."""

from __future__ import annotations

import argparse
import json
from pathlib import Path

from automode.config import AutoModeSettings
from automode.features import Feature, FeatureStoreError
from automode.features.store import FEATURE_FILE, FEATURES_DIR
from automode.providers import get_provider
from automode.storage import ChromaStore, ChromaUnavailableError


def load_store(settings: AutoModeSettings) -> ChromaStore:
    try:
        store = ChromaStore(settings.chroma_persist_path)
        store.ping()
        return store
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)


def cmd_detect(args: argparse.Namespace) -> None:
    settings = AutoModeSettings()
    provider = get_provider(args.model or settings.default_model, cli_path=settings.claude_cli_path)
    status = provider.detect_installation()
    print(json.dumps({"provider": provider.name, **status.model_dump(mode="json")}, indent=2))
    if not status.installed:
        raise SystemExit(1)


def cmd_models(args: argparse.Namespace) -> None:
    settings = AutoModeSettings()
    provider = get_provider(args.model or settings.default_model, cli_path=settings.claude_cli_path)
    models = [definition.model_dump(mode="json") for definition in provider.available_models()]
    if args.json:
        print(json.dumps(models, indent=2))
    else:
        for definition in models:
            print(f"{definition['id']} -> {definition['model_string']}")


def cmd_features(args: argparse.Namespace) -> None:
    root = Path(args.project) / FEATURES_DIR
    rows = []
    for path in sorted(root.glob(f"*/{FEATURE_FILE}")):
        try:
            feature = Feature.model_validate(json.loads(path.read_text(encoding="utf-8")))
        except (ValueError, FeatureStoreError) as exc:
            rows.append({"path": str(path), "error": str(exc)})
            continue
        rows.append(
            {
                "id": feature.id,
                "status": feature.status,
                "title": feature.title,
                "sdk_session_id": feature.sdk_session_id,
            }
        )
    print(json.dumps(rows, indent=2))


def cmd_events(args: argparse.Namespace) -> None:
    settings = AutoModeSettings()
    store = load_store(settings)
    try:
        events = store.fetch_feature_events(args.feature_id)
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)

    if args.limit is not None and args.limit > 0:
        events = events[-args.limit :]

    payload = [
        {
            "event_id": event.id,
            "event_type": event.event_type,
            "session_id": event.metadata.get("session_id"),
            "text": event.metadata.get("text"),
            "timestamp": event.timestamp.isoformat(),
        }
        for event in events
    ]
    print(json.dumps(payload, indent=2))


def cmd_metrics(args: argparse.Namespace) -> None:
    settings = AutoModeSettings()
    store = load_store(settings)
    try:
        events = store.search_events()
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)

    type_counts: dict[str, int] = {}
    feature_counts: dict[str, int] = {}
    failures: dict[str, int] = {}
    for event in events:
        type_counts[event.event_type] = type_counts.get(event.event_type, 0) + 1
        feature_counts[event.feature_id] = feature_counts.get(event.feature_id, 0) + 1
        if event.event_type == "agent_error":
            failures[event.feature_id] = failures.get(event.feature_id, 0) + 1

    metrics = {
        "events_total": len(events),
        "features_total": len(feature_counts),
        "event_type_counts": type_counts,
        "error_counts": failures,
    }
    print(json.dumps(metrics, indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Auto-mode diagnostics")
    sub = parser.add_subparsers(dest="cmd")

    p_detect = sub.add_parser("detect", help="Locate the agent CLI")
    p_detect.add_argument("--model", help="Model id; a -chrome suffix selects the Chrome variant")
    p_detect.set_defaults(func=cmd_detect)

    p_models = sub.add_parser("models", help="List models served by the provider")
    p_models.add_argument("--model")
    p_models.add_argument("--json", action="store_true", help="Output JSON")
    p_models.set_defaults(func=cmd_models)

    p_features = sub.add_parser("features", help="List feature documents of a project")
    p_features.add_argument("--project", default=".")
    p_features.set_defaults(func=cmd_features)

    p_events = sub.add_parser("events", help="Show recorded agent messages for a feature")
    p_events.add_argument("--feature-id", required=True)
    p_events.add_argument(
        "--limit",
        type=int,
        default=None,
        help="If provided, show only the latest N events",
    )
    p_events.set_defaults(func=cmd_events)

    p_metrics = sub.add_parser("metrics", help="Show event counts per type and feature")
    p_metrics.set_defaults(func=cmd_metrics)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()
