"""CLI command implementations for Viewkeeper."""

from __future__ import annotations

import json
import signal
import sys
import threading
from dataclasses import replace
from typing import IO, Any

from viewkeeper.config import EngineConfig, load_config
from viewkeeper.deadletter import DeadLetterReason, create_dead_letter_sink
from viewkeeper.errors import ValidationError
from viewkeeper.events import decode_envelope
from viewkeeper.ingest import ProjectionEngine
from viewkeeper.logging import bind_context, clear_context, configure_logging
from viewkeeper.metrics import configure_metrics
from viewkeeper.rebuild import RebuildController
from viewkeeper.store import ViewQuery, create_view_store
from viewkeeper.stream import create_stream
from viewkeeper.tracing import configure_tracing


def build_config(
    config_path: str | None = None,
    db_url: str | None = None,
    stream_url: str | None = None,
) -> EngineConfig:
    """Load configuration (file, then env), with command-line overrides on top."""
    config = load_config(config_path)
    if db_url:
        config = replace(config, database_url=db_url)
    if stream_url:
        config = replace(config, stream_url=stream_url)
    return config.validate()


def run(config: EngineConfig, once: bool = False) -> None:
    """Run the projection engine until interrupted, or catch up once and exit."""
    configure_logging(json_format=config.environment == "production")
    configure_metrics()
    configure_tracing(service_name="viewkeeper", environment=config.environment)
    bind_context(consumer_group=config.consumer_group, environment=config.environment)

    try:
        _run_engine(config, once)
    finally:
        clear_context()


def _run_engine(config: EngineConfig, once: bool) -> None:
    with ProjectionEngine.from_config(config) as engine:
        if once:
            processed = engine.run_until_idle()
            print(f"Processed {processed} record(s)")
            _print_json(engine.totals().to_dict())
            return

        stopped = threading.Event()

        def _shutdown(signum: int, frame: Any) -> None:
            stopped.set()

        signal.signal(signal.SIGINT, _shutdown)
        signal.signal(signal.SIGTERM, _shutdown)

        engine.start()
        print(f"Consuming partitions {engine.partitions} as {config.consumer_group!r} (Ctrl-C to stop)")
        stopped.wait()
        engine.stop(timeout=config.pause_timeout_seconds)
        _print_json(engine.totals().to_dict())


def publish(config: EngineConfig, source: IO[str]) -> None:
    """Publish JSON-lines envelopes to the stream. Invalid lines are reported and skipped."""
    stream = create_stream(config.resolved_stream_url, config.partition_count)
    published = 0
    rejected = 0
    for line_number, line in enumerate(source, start=1):
        line = line.strip()
        if not line:
            continue
        try:
            envelope = decode_envelope(line)
        except ValidationError as e:
            rejected += 1
            print(f"Line {line_number}: {e}", file=sys.stderr)
            continue
        stream.publish(envelope.entity_key, line.encode("utf-8"))
        published += 1
    print(f"Published {published} event(s), rejected {rejected}")
    if rejected:
        sys.exit(1)


def lag(config: EngineConfig) -> None:
    """Print committed offset and lag for every owned partition."""
    stream = create_stream(config.resolved_stream_url, config.partition_count)
    partitions = config.partitions if config.partitions is not None else stream.partitions()
    print(f"{'PARTITION':>9}  {'LATEST':>10}  {'COMMITTED':>10}  {'LAG':>8}")
    for partition in partitions:
        position = stream.lag(config.consumer_group, partition)
        print(f"{partition:>9}  {position.latest_offset:>10}  {position.committed_offset:>10}  {position.lag:>8}")


def dead_letters(
    config: EngineConfig,
    reason: str | None = None,
    limit: int = 20,
    replay_id: int | None = None,
) -> None:
    """List dead letters, or republish one to the stream."""
    sink = create_dead_letter_sink(config.resolved_stream_url)

    if replay_id is not None:
        stream = create_stream(config.resolved_stream_url, config.partition_count)
        position = sink.replay(replay_id, stream)
        if position is None:
            print(f"Error: dead letter {replay_id} not found")
            sys.exit(1)
        print(f"Replayed dead letter {replay_id} to partition {position[0]} offset {position[1]}")
        return

    wanted = DeadLetterReason(reason) if reason else None
    letters = sink.list(limit=limit, reason=wanted)
    print(f"{sink.count(wanted)} dead letter(s)")
    for letter in letters:
        _print_json(letter.to_dict())


def rebuild(config: EngineConfig, assume_yes: bool = False) -> None:
    """Truncate the view, rewind the stream and replay it."""
    if not assume_yes:
        answer = input(f"Rebuild will truncate the view at {config.database_url}. Continue? [y/N] ")
        if answer.strip().lower() not in ("y", "yes"):
            print("Aborted")
            return

    configure_logging(json_format=config.environment == "production")
    with ProjectionEngine.from_config(config) as engine:
        report = RebuildController(engine).rebuild()
        replayed = engine.run_until_idle()
        print(f"Rebuild finished: truncated {report.rows_truncated} row(s), replayed {replayed} record(s)")
        _print_json(engine.totals().to_dict())


def query(
    config: EngineConfig,
    status: str | None = None,
    limit: int = 20,
    order_by: str = "updated_at",
    ascending: bool = False,
) -> None:
    """Print view rows as JSON lines."""
    with create_view_store(config.database_url) as store:
        rows = store.query(ViewQuery(status=status, order_by=order_by, ascending=ascending, limit=limit))
        for row in rows:
            _print_json(row.to_dict())


def _print_json(data: dict[str, Any]) -> None:
    print(json.dumps(data, sort_keys=True, default=str))
