from __future__ import annotations

import argparse
import json
import sys
from collections.abc import Sequence

from prompt_composer.framework.config import ComposerConfig, load_composer_config


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="prompt-composer", add_help=True)
    sub = parser.add_subparsers(dest="command", required=True)

    compose = sub.add_parser("compose", help="Compose a diverse batch of prompts")
    compose.add_argument("--category", required=True, help="Corpus category to draw components from")
    compose.add_argument("--intent", default="", help="Free-text request used to bias selection")
    compose.add_argument("--brand", default=None, help="Restrict outfits and attach brand elements")
    compose.add_argument("--count", type=int, default=1, help="Number of concepts to compose")
    compose.add_argument("--seed", type=int, default=None, help="Random seed (overrides composer.random_seed)")
    compose.add_argument("--batch-id", default=None, help="Batch identifier used for logs and metrics")
    compose.add_argument("--output", default=None, help="Write the JSON payload to this path instead of stdout")
    compose.add_argument(
        "--usage-report",
        action="store_true",
        help="Include per-component usage counts after the batch as component_usage in the payload",
    )

    list_categories = sub.add_parser("list-categories", help="List categories present in the corpus")
    usage_report = sub.add_parser(
        "usage-report",
        help="Print per-component usage counts of a freshly loaded corpus",
        description=(
            "Usage counts live in memory for one process, so a freshly loaded corpus reports "
            "its ingested counts (usually 0). Use 'compose --usage-report' for counts after a batch."
        ),
    )

    for command in (compose, list_categories, usage_report):
        command.add_argument("--config", default=None, help="Config YAML (single file, no overlay)")
        command.add_argument(
            "--corpus",
            nargs="+",
            default=[],
            metavar="PATH",
            help="Extra corpus files (yaml/json/csv) added to the configured corpus",
        )

    return parser


def _database_from_config(cfg: ComposerConfig):
    from .framework.ingestion import build_database

    return build_database(
        cfg.corpus_paths,
        include_bundled=cfg.include_bundled,
        selection_pool_fraction=cfg.selection_pool_fraction,
    )


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(list(argv) if argv is not None else None)

    try:
        cfg, cfg_warnings, cfg_source = load_composer_config(args.config, extra_corpus_paths=args.corpus)
    except (FileNotFoundError, ValueError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1

    if args.command == "compose":
        from .app.compose import run_batch
        from .framework.components import BatchRequest
        from .framework.composition import CompositionError

        try:
            request = BatchRequest(
                category=args.category,
                user_intent=args.intent,
                brand=args.brand,
                count=args.count,
            )
            result = run_batch(
                cfg,
                request,
                batch_id=args.batch_id,
                seed=args.seed,
                config_source=cfg_source,
                config_warnings=cfg_warnings,
                include_usage_report=args.usage_report,
            )
        except (CompositionError, ValueError) as exc:
            print(f"error: {exc}", file=sys.stderr)
            return 1

        payload = json.dumps(result.to_dict(), indent=2, ensure_ascii=False)
        if args.output:
            with open(args.output, "w", encoding="utf-8") as handle:
                handle.write(payload + "\n")
            print(args.output)
        else:
            print(payload)
        return 0

    for warning in cfg_warnings:
        print(f"warning: {warning}", file=sys.stderr)

    if args.command == "list-categories":
        database = _database_from_config(cfg)
        for category in database.categories():
            print(category)
        return 0

    if args.command == "usage-report":
        from .framework.metrics import component_usage_report

        database = _database_from_config(cfg)
        report = component_usage_report(database)
        print(report.to_string(index=False) if not report.empty else "(no components)")
        return 0

    raise AssertionError(f"Unhandled command: {args.command}")


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main(sys.argv[1:]))
