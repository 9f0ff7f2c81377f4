"""CLI entry point for twinstream."""

from __future__ import annotations

import argparse
import asyncio
import os
import sys

from twinstream.app import TwinStreamApp, build_registry
from twinstream.config import AppConfig, load_config
from twinstream.core.accounting import format_cost, format_tokens
from twinstream.core.errors import TwinStreamError
from twinstream.core.types import EventType, Provider, Slot
from twinstream.engine.events import StreamEvent
from twinstream.log import setup_logging
from twinstream.storage.models import ComparisonOutcome


def _add_config_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-c", "--config", default="config.yaml", help="Path to config file")
    parser.add_argument("-e", "--env", default=".env", help="Path to .env file")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="twinstream",
        description="Stream one prompt to two LLMs side by side with live cost tracking",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP/SSE server")
    _add_config_args(serve_parser)
    serve_parser.add_argument("--host", help="Override server.host")
    serve_parser.add_argument("--port", type=int, help="Override server.port")

    check_parser = subparsers.add_parser("config-check", help="Validate configuration")
    _add_config_args(check_parser)

    model_parser = subparsers.add_parser("model-info", help="Show the model catalog and pricing")
    _add_config_args(model_parser)

    compare_parser = subparsers.add_parser("compare", help="Run one comparison in the terminal")
    _add_config_args(compare_parser)
    compare_parser.add_argument("prompt", help="Prompt sent to both models")
    compare_parser.add_argument("-a", "--model1", help="Model for slot A")
    compare_parser.add_argument("-b", "--model2", help="Model for slot B")

    history_parser = subparsers.add_parser("history", help="Inspect or prune stored comparisons")
    _add_config_args(history_parser)
    history_sub = history_parser.add_subparsers(dest="action", required=True)

    list_parser = history_sub.add_parser("list", help="List comparisons, newest first")
    list_parser.add_argument("--page", type=int, default=1)
    list_parser.add_argument("--page-size", type=int, default=20)
    list_parser.add_argument("-s", "--search", help="Substring filter on prompt and responses")

    history_sub.add_parser("stats", help="Aggregate cost and usage statistics")

    delete_parser = history_sub.add_parser("delete", help="Delete comparisons by id")
    delete_parser.add_argument("ids", nargs="+")

    export_parser = history_sub.add_parser("export", help="Print the whole history")
    export_parser.add_argument("--format", choices=["json", "csv"], default="json")

    cleanup_parser = history_sub.add_parser("cleanup", help="Delete old or failed comparisons")
    cleanup_parser.add_argument("--older-than-days", type=int)
    cleanup_parser.add_argument("--keep-count", type=int)
    cleanup_parser.add_argument("--remove-errors", action="store_true")

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    config = _load(args.config, args.env)

    if args.command == "config-check":
        _check_config(config, args.config)
        return
    if args.command == "model-info":
        _model_info(config)
        return

    setup_logging(config.log_level, config.log_format)
    try:
        if args.command == "serve":
            _serve(config, args.host, args.port)
        elif args.command == "compare":
            asyncio.run(_compare(config, args.prompt, args.model1, args.model2))
        elif args.command == "history":
            asyncio.run(_history(config, args))
    except TwinStreamError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except BrokenPipeError:
        # stdout reader went away (e.g. piped into head); the comparison was still saved
        devnull = os.open(os.devnull, os.O_WRONLY)
        os.dup2(devnull, sys.stdout.fileno())
        sys.exit(1)


def _load(config_path: str, env_path: str) -> AppConfig:
    try:
        return load_config(config_path, env_path)
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        print("Copy config.example.yaml to config.yaml and fill in your API keys")
        sys.exit(1)
    except Exception as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)


def _check_config(config: AppConfig, config_path: str) -> None:
    """Print a summary of a configuration that loaded successfully."""
    registry = build_registry(config.models)
    print(f"Configuration valid: {config_path}")
    print(f"  Data directory : {config.data_dir}")
    print(f"  Storage        : {config.storage.db_path}")
    print(f"  Server         : {config.server.host}:{config.server.port}")
    print(f"  OpenAI key     : {'set' if config.openai.api_key else 'missing'}")
    print(f"  Anthropic key  : {'set' if config.anthropic.api_key else 'missing'}")
    print(f"  Models         : {len(registry)} ({len(config.models)} from config)")
    print(f"  Defaults       : {config.defaults.model1} vs {config.defaults.model2}")
    for name in (config.defaults.model1, config.defaults.model2):
        if not registry.is_available(name):
            print(f"  Warning: default model '{name}' is not in the catalog")
    retention = config.retention
    if retention.enabled:
        print(
            f"  Retention      : daily at {retention.hour:02d}:00 {retention.timezone} "
            f"(older than {retention.older_than_days} days, keep {retention.keep_count})"
        )
    else:
        print("  Retention      : disabled")


def _model_info(config: AppConfig) -> None:
    registry = build_registry(config.models)
    keys = {Provider.OPENAI: config.openai.api_key, Provider.ANTHROPIC: config.anthropic.api_key}

    print("Model Catalog (USD per 1K tokens)")
    print("=" * 72)
    for provider in Provider:
        status = "key set" if keys[provider] else "no API key"
        print(f"\n  {provider.value} ({status})")
        for m in registry.by_provider(provider):
            print(
                f"    {m.id:<30} in {m.input_price_per_1k:<9g} out {m.output_price_per_1k:<9g}"
                f" ctx {format_tokens(m.max_context)}"
            )
    print()


def _print_event(event: StreamEvent) -> None:
    data = event.data
    match event.type:
        case EventType.START:
            print(f"[{event.slot}] start {data.model}")
        case EventType.TOKEN:
            print(f"[{event.slot}] {data.delta!r}")
        case EventType.COMPLETE:
            print(
                f"[{event.slot}] complete  tokens={format_tokens(data.tokens.total)}"
                f"  cost={format_cost(data.cost)}"
            )
        case EventType.ERROR:
            print(f"[{event.slot}] error: {data.error}")


async def _compare(config: AppConfig, prompt: str, model1: str | None, model2: str | None) -> None:
    app = TwinStreamApp(config)
    request = app.orchestrator.validate(
        prompt, model1 or config.defaults.model1, model2 or config.defaults.model2
    )
    await app.start()
    try:

        async def _emit(event: StreamEvent) -> None:
            _print_event(event)

        async def _saved(outcome: ComparisonOutcome, record_id: str | None) -> None:
            if record_id:
                print(f"\nSaved to history as {record_id}")
            else:
                print("\nWarning: comparison was not saved to history", file=sys.stderr)

        app.orchestrator.on_commit.append(_saved)
        outcome = await app.orchestrator.run(request, _emit)
    finally:
        await app.stop()

    print("\nSummary")
    print("-" * 40)
    for slot, model_id, text, cost, error in (
        (Slot.A, outcome.model_id1, outcome.final_text1, outcome.cost1, outcome.error1),
        (Slot.B, outcome.model_id2, outcome.final_text2, outcome.cost2, outcome.error2),
    ):
        print(f"[{slot}] {model_id}")
        if error:
            print(f"    failed: {error}")
        else:
            print(f"    {text}")
            print(f"    cost: {format_cost(cost or 0.0)}")
    print(f"Total cost: {format_cost(outcome.total_cost)}")


async def _history(config: AppConfig, args: argparse.Namespace) -> None:
    app = TwinStreamApp(config)
    await app.db.initialize()
    try:
        repo = app.history
        match args.action:
            case "list":
                result = await repo.list(page=args.page, page_size=args.page_size, search=args.search)
                print(f"{result.total} comparison(s), page {result.page}")
                for r in result.items:
                    total = (r.cost1 or 0.0) + (r.cost2 or 0.0)
                    flag = " !" if r.has_error else ""
                    print(
                        f"  {r.id}  {r.created_at:%Y-%m-%d %H:%M}  {r.model_id1} vs {r.model_id2}"
                        f"  {format_cost(total)}{flag}  {r.prompt[:50]!r}"
                    )
            case "stats":
                stats = await repo.statistics()
                print(f"Comparisons : {stats.total_comparisons}")
                print(f"Total cost  : {format_cost(stats.total_cost)}")
                print(f"Average cost: {format_cost(stats.average_cost)}")
                print(f"Tokens      : {format_tokens(stats.total_tokens)}")
                for usage in stats.most_used_models:
                    print(f"  {usage.model_id:<30} {usage.count}")
            case "delete":
                deleted = await repo.delete_many(args.ids)
                print(f"Deleted {deleted} comparison(s)")
            case "export":
                print(await repo.export(args.format))
            case "cleanup":
                deleted = await repo.cleanup(
                    older_than_days=args.older_than_days,
                    keep_count=args.keep_count,
                    remove_errors=args.remove_errors,
                )
                print(f"Deleted {deleted} comparison(s)")
    finally:
        await app.db.close()


def _serve(config: AppConfig, host: str | None, port: int | None) -> None:
    import uvicorn

    from twinstream.transport.server import create_app

    app = create_app(TwinStreamApp(config))
    uvicorn.run(
        app,
        host=host or config.server.host,
        port=port or config.server.port,
        log_level=config.log_level.lower(),
    )


if __name__ == "__main__":
    main()
