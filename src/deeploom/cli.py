"""Command line utility to compile a study packet from a segment file.

Segments are read from a JSON or YAML file (a list of records, or a mapping
with a ``segments`` key). Each record carries ``segmentId``, ``pali`` and an
optional ``baseEnglish``; ``workId`` defaults to ``--work-id``. The packet
is compiled with the OpenAI-compatible gateway and written as JSON.

    python -m deeploom.cli compile segments.yaml --work-id mn10 --out packet.json
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from pathlib import Path
from typing import Any, List, Mapping, Sequence

import yaml

from deeploom.common.errors import DeepLoomError
from deeploom.common.logging import get_logger
from deeploom.config.settings import Settings, get_settings
from deeploom.studio.compiler import PacketCompiler
from deeploom.studio.models import IssueLevel, Packet
from deeploom.studio.sources import InMemorySegmentSource


def load_segment_records(path: Path) -> List[Mapping[str, Any]]:
    """Read segment records from *path* (``.json``, ``.yaml`` or ``.yml``)."""

    with path.open("r", encoding="utf-8") as handler:
        if path.suffix.lower() in (".yaml", ".yml"):
            data = yaml.safe_load(handler)
        else:
            data = json.load(handler)
    if isinstance(data, dict):
        data = data.get("segments")
    if not isinstance(data, list):
        raise ValueError(f"{path} must contain a list of segments (or a 'segments' key)")
    return data


def build_parser(settings: Settings) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="deeploom", description="DeepLoom study-packet compiler")
    sub = parser.add_subparsers(dest="command", required=True)

    compile_cmd = sub.add_parser("compile", help="Compile a packet from a segment file")
    compile_cmd.add_argument("segments", type=Path, help="Segment file (.json or .yaml)")
    compile_cmd.add_argument(
        "--work-id",
        action="append",
        required=True,
        help="Work id to compile (repeat for several works, compiled in order)",
    )
    compile_cmd.add_argument(
        "--out",
        type=Path,
        default=None,
        help="Output packet file (default: <packets_dir>/<packetId>.json)",
    )
    compile_cmd.add_argument(
        "--max-phases",
        type=int,
        default=settings.debug_max_phases,
        help="Debug only: compile the first K phases (terminal state 'incomplete')",
    )
    compile_cmd.add_argument(
        "--allow-cross-boundary",
        action="store_true",
        help="Allow phases that span two works",
    )
    compile_cmd.add_argument("--verbose", action="store_true", help="Echo logs to the console")
    return parser


async def run_compile(args: argparse.Namespace, settings: Settings) -> Packet:
    from deeploom.llm.gateway import OpenAIChatGateway, build_capability_resolver

    records = load_segment_records(args.segments)
    source = InMemorySegmentSource.from_records(records, default_work_id=args.work_id[0])
    compiler = PacketCompiler(
        gateway=OpenAIChatGateway(),
        segment_source=source,
        settings=settings,
        capability_resolver=build_capability_resolver(),
    )

    def report(stage: str, packet: Packet) -> None:
        progress = packet.progress
        print(f"[{stage}] {progress.ready_phases}/{progress.total_phases} phases ({progress.state.value})")

    return await compiler.compile(
        args.work_id,
        on_progress=report,
        allow_cross_boundary=args.allow_cross_boundary,
        debug_max_phases=args.max_phases,
    )


def main(argv: Sequence[str] | None = None) -> int:
    """Entry-point for the compiler CLI."""

    settings = get_settings()
    parser = build_parser(settings)
    args = parser.parse_args(list(argv) if argv is not None else None)

    logger = get_logger("compile.log", enable_console=args.verbose)
    if not args.segments.exists():
        print(f"❌ Segment file not found: {args.segments}")
        return 1

    try:
        packet = asyncio.run(run_compile(args, settings))
    except (DeepLoomError, RuntimeError, ValueError, yaml.YAMLError) as e:
        logger.error(f"[DEEPLOOM:CLI] Compilation could not start: {e}")
        print(f"❌ Compilation could not start: {e}")
        return 1

    out: Path = args.out or settings.packets_dir / f"{packet.packet_id}.json"
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(json.dumps(packet.to_wire(), ensure_ascii=False, indent=2), encoding="utf-8")

    errors = len(packet.issues_at(IssueLevel.ERROR))
    logger.log(
        logging.WARNING if errors else logging.INFO,
        f"[DEEPLOOM:CLI] {packet.packet_id} written to {out} "
        f"({packet.progress.state.value}, {len(packet.validation_issues)} issues)",
    )
    print(f"✅ Packet written: {out} ({packet.progress.state.value}, {errors} errors)")
    return 0 if packet.progress.state.value != "error" else 2


if __name__ == "__main__":
    raise SystemExit(main())
