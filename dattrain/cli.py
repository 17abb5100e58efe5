"""Command line entry point: run a simulated session or inspect history."""

from __future__ import annotations

import argparse
import asyncio
from collections.abc import Sequence

import structlog

from dattrain.config import get_settings
from dattrain.database import create_session_factory
from dattrain.errors import CancellationError, TrainingError
from dattrain.logging_config import configure_logging
from dattrain.schemas.training import LogEntry, ModelType, OptimizerType
from dattrain.services.registry import SessionRegistry
from dattrain.services.session_store import SqlSessionStore
from dattrain.services.training_service import TrainingService

logger = structlog.get_logger(__name__)


def _build_registry() -> SessionRegistry:
    return SessionRegistry(SqlSessionStore(create_session_factory(get_settings().database_url)))


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="dattrain", description="Simulated client-side model training.")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL for this run.")
    sub = parser.add_subparsers(dest="command", required=True)

    train = sub.add_parser("train", help="Run one local training session.")
    train.add_argument("--model-id", default="local-model")
    train.add_argument("--model-type", choices=[m.value for m in ModelType], default=ModelType.MLP.value)
    train.add_argument("--optimizer", choices=[o.value for o in OptimizerType], default=OptimizerType.ADAM.value)
    train.add_argument("--epochs", type=int, default=10)
    train.add_argument("--batch-size", type=int, default=32)
    train.add_argument("--learning-rate", type=float, default=0.001)
    train.add_argument("--validation-split", type=float, default=0.2)
    train.add_argument("--seed", type=int, default=None)
    train.add_argument("--no-upload", action="store_true", help="Skip uploading gradients to the blob store.")

    history = sub.add_parser("history", help="Show recent sessions and averages.")
    history.add_argument("--limit", type=int, default=10)
    return parser


async def _train(args: argparse.Namespace) -> int:
    options = {
        "epochs": args.epochs,
        "batch_size": args.batch_size,
        "learning_rate": args.learning_rate,
        "model_type": args.model_type,
        "optimizer": args.optimizer,
        "validation_split": args.validation_split,
        "seed": args.seed,
    }
    service = TrainingService(registry=_build_registry())

    def attach_console(session_id: str) -> None:
        def echo(entry: LogEntry) -> None:
            print(f"[{entry.level.value}] {entry.message}")

        service.get_emitter(session_id).on_log(echo)

    try:
        outcome = await service.run_session(
            args.model_id,
            options,
            upload=not args.no_upload,
            on_session_created=attach_console,
        )
    except CancellationError:
        print("[train] cancelled")
        return 130
    finally:
        await service.close()

    session = outcome.session
    print(
        f"[train] session {session.id} completed: loss={session.loss:.4f} "
        f"accuracy={session.accuracy * 100:.2f}% blob={session.blob_reference or '-'}"
    )
    return 0


def _history(args: argparse.Namespace) -> int:
    registry = _build_registry()
    sessions = registry.get_recent_sessions(args.limit)
    if not sessions:
        print("[history] no sessions recorded")
        return 0

    for session in sessions:
        print(
            f"{session.start_time:%Y-%m-%d %H:%M:%S}  {session.id}  {session.model_type.value:<11} "
            f"{session.status.value:<9} loss={session.loss:.4f} accuracy={session.accuracy * 100:.2f}%"
            + (f"  error={session.error}" if session.error else "")
        )
    print(
        f"[history] completed={registry.total_sessions_completed} "
        f"avg_loss={registry.get_average_loss():.4f} "
        f"avg_accuracy={registry.get_average_accuracy() * 100:.2f}% "
        f"training_time={registry.total_training_time:.1f}s"
    )
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    configure_logging(level=args.log_level)

    try:
        if args.command == "train":
            return asyncio.run(_train(args))
        return _history(args)
    except TrainingError as exc:
        logger.error("command_failed", command=args.command, error=str(exc))
        print(f"[{args.command}] {exc}")
        return 1
