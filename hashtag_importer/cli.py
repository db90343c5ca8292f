from __future__ import annotations

import argparse
import signal
import sys
from contextlib import ExitStack
from typing import Any, Sequence

from .adapters import open_components, open_cursor_store
from .backoff import BackoffPolicy
from .config import config_sha256, load_config, resolve_runtime_secrets
from .config_schema import AppConfig
from .errors import ConfigError, FatalError, StorageError
from .health import HealthController, ProbeServer
from .pump import STATUS_SHUTDOWN, Pump
from .run_log import RunLogger
from .summary import build_summary, format_summary
from .versions import runtime_versions


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="hashtag-importer")

    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser(
        "run",
        help="Import hashtags continuously until stopped.",
    )
    run.add_argument(
        "--config",
        default=None,
        help="Optional YAML config file; HASHTAG_IMPORTER_* environment variables override it.",
    )
    run.set_defaults(_handler=_cmd_run)

    reset = subparsers.add_parser(
        "reset-cursor",
        help="Move the persisted cursor (default: back to the start of the source).",
    )
    reset.add_argument(
        "--config",
        default=None,
        help="Optional YAML config file; HASHTAG_IMPORTER_* environment variables override it.",
    )
    reset.add_argument(
        "--to",
        default=None,
        help="Cursor token to store. Omit to restart from the beginning.",
    )
    reset.set_defaults(_handler=_cmd_reset_cursor)

    return parser


def _eprint(message: str) -> None:
    print(message, file=sys.stderr)


def _open_logger(cfg: AppConfig | None, *, session_id: str | None = None) -> RunLogger:
    if cfg is None:
        return RunLogger.to_stream(sys.stderr, session_id=session_id)
    if cfg.logging.path:
        return RunLogger.open(cfg.logging.path, min_level=cfg.logging.level, session_id=session_id)
    return RunLogger.to_stream(sys.stderr, min_level=cfg.logging.level, session_id=session_id)


def _build_pump(cfg: AppConfig, components: Any, health: HealthController, log: RunLogger) -> Pump:
    return Pump(
        components.source,
        components.sink,
        components.cursor_store,
        policy=BackoffPolicy(
            base_delay_seconds=cfg.pump.base_backoff_seconds,
            max_delay_seconds=cfg.pump.max_backoff_seconds,
            jitter_ratio=cfg.pump.jitter_ratio,
        ),
        cycle_interval_seconds=cfg.pump.cycle_interval_seconds,
        max_consecutive_failures=cfg.pump.max_consecutive_failures,
        health=health,
        logger=log,
        stream=cfg.cursor.name,
    )


def _cmd_run(args: argparse.Namespace) -> int:
    log = _open_logger(None)
    log.info("run_command_started", config_path=args.config)

    try:
        cfg = load_config(args.config)
        secrets = resolve_runtime_secrets(cfg)

        if cfg.logging.path:
            log.info("log_redirected", path=cfg.logging.path)
        bootstrap, log = log, _open_logger(cfg, session_id=log.session_id)
        bootstrap.close()

        cfg_hash = config_sha256(cfg)
        log.info(
            "config_loaded",
            config_hash=cfg_hash,
            source_kind=cfg.source.kind,
            sink_kind=cfg.sink.kind,
            cursor_kind=cfg.cursor.kind,
            page_size=cfg.source.page_size,
            cycle_interval_seconds=cfg.pump.cycle_interval_seconds,
            max_backoff_seconds=cfg.pump.max_backoff_seconds,
            probe_port=cfg.health.port,
        )

        health = HealthController()
        previous_handlers = health.install_signal_handlers()

        with ExitStack() as stack:
            stack.callback(_restore_signal_handlers, previous_handlers)

            if cfg.health.port:
                probe = ProbeServer(health, host=cfg.health.host, port=cfg.health.port).start()
                stack.callback(probe.stop)
                log.info("probe_server_started", host=cfg.health.host, port=probe.port)

            components = open_components(cfg, secrets, stack, health=health)

            run_id: str | None = None
            if components.store is not None:
                run_id = components.store.create_run(
                    config_hash=cfg_hash,
                    versions=runtime_versions(),
                ).run_id
                log.set_run_id(run_id)

            result = _build_pump(cfg, components, health, log).run()
            summary = build_summary(result)

            if components.store is not None and run_id is not None:
                try:
                    components.store.finish_run(run_id, status=result.status, summary=summary)
                except StorageError as e:
                    log.exception("run_record_finish_failed", exc=e)

        print(format_summary(summary))
        return 0 if result.status == STATUS_SHUTDOWN else 3
    except Exception as e:
        log.exception("run_command_failed", exc=e)
        raise
    finally:
        log.close()


def _restore_signal_handlers(previous: dict[signal.Signals, Any]) -> None:
    for sig, handler in previous.items():
        signal.signal(sig, handler)


def _cmd_reset_cursor(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)
    log = _open_logger(cfg)

    try:
        with ExitStack() as stack:
            cursor_store = open_cursor_store(
                cfg.cursor,
                stack,
                sink_path=cfg.sink.path if cfg.sink.kind == "sqlite" else None,
            )
            record = cursor_store.reset(args.to)

        log.info("cursor_reset", cursor=record.token, version=record.version)
        print(f"cursor={'' if record.token is None else record.token}")
        print(f"version={record.version}")
        return 0
    except Exception as e:
        log.exception("reset_cursor_failed", exc=e)
        raise
    finally:
        log.close()


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    try:
        handler = getattr(args, "_handler")
        return int(handler(args))
    except ConfigError as e:
        _eprint(str(e))
        return 2
    except (FatalError, StorageError) as e:
        _eprint(str(e))
        return 3
    except KeyboardInterrupt:
        _eprint("Interrupted")
        return 130
    except Exception as e:
        _eprint(f"Unexpected error: {e}")
        return 1
