"""Command-line entry point for moltguard.

Evaluates one payload (a file or stdin) and prints the result as JSON.
Exit status: 0 allow, 1 warn, 2 block, 3 rejected before analysis.
"""

from __future__ import annotations

import argparse
import json
import sys
from collections.abc import Sequence
from typing import Any

from moltguard.config import get_settings
from moltguard.logging import get_logger, setup_logging
from moltguard.validation import (
    Action,
    ContentRejectedError,
    SignatureRegistry,
    TrustTier,
    ValidationPipeline,
    ValidationResult,
)

EXIT_CODES = {Action.ALLOW: 0, Action.WARN: 1, Action.BLOCK: 2}
EXIT_REJECTED = 3


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="moltguard",
        description="Validate untrusted content before it reaches an agent.",
    )
    parser.add_argument("path", nargs="?", help="Payload file (reads stdin when omitted)")
    parser.add_argument("--content-type", default=None, help="Declared MIME type")
    parser.add_argument("--channel", default="cli", help="Source channel identifier")
    parser.add_argument(
        "--trust-tier",
        default=TrustTier.UNAUTHENTICATED.value,
        choices=[t.value for t in TrustTier],
        help="Provenance level of the source",
    )
    parser.add_argument("--registry", default=None, help="JSON signature registry to load")
    return parser


def result_to_dict(result: ValidationResult) -> dict[str, Any]:
    """Render the caller-facing fields of a result."""
    return {
        "action": result.action.value,
        "annotated_payload": result.payload.value if result.payload else None,
        "risk_score": result.risk_score,
        "matched_categories": [c.value for c in result.matched_categories],
        "internal_error": result.internal_error,
        "record_id": result.record.record_id,
    }


def main(argv: Sequence[str] | None = None) -> int:
    """Run the CLI and return its exit status."""
    args = build_parser().parse_args(argv)

    settings = get_settings()
    setup_logging(settings)
    log = get_logger("moltguard.main")

    registry = SignatureRegistry.from_file(args.registry) if args.registry else None
    pipeline = ValidationPipeline.from_settings(settings, registry=registry)

    if args.path:
        with open(args.path, "rb") as fh:
            raw = fh.read()
    else:
        raw = sys.stdin.buffer.read()

    try:
        result = pipeline.evaluate(
            raw,
            declared_content_type=args.content_type,
            source_channel=args.channel,
            trust_tier=args.trust_tier,
        )
    except ContentRejectedError as e:
        log.warning("payload_rejected", kind=e.kind, reason=str(e))
        print(json.dumps({"rejected": e.kind, "reason": str(e)}))
        return EXIT_REJECTED

    print(json.dumps(result_to_dict(result), ensure_ascii=False))
    return EXIT_CODES[result.action]


def run() -> None:
    """Console-script entry point."""
    sys.exit(main())


if __name__ == "__main__":
    run()
