"""Command line entry point for operators."""
import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from phonocoach.config import ensure_directories, settings
from phonocoach.errors import PhonocoachError
from phonocoach.logging_config import setup_logging
from phonocoach.models.base import SessionLocal, init_db
from phonocoach.monitoring import start_monitoring
from phonocoach.services.alignment import diagnose
from phonocoach.services.gateway import SpeechGateway
from phonocoach.services.practice_service import PracticeService
from phonocoach.services.secret_store import DatabaseSecretStore, get_secret_store

logger = logging.getLogger(__name__)


def cmd_init_db(args: argparse.Namespace) -> int:
    init_db()
    logger.info(f"Database initialized at {settings.database.url}")
    return 0


def cmd_set_secret(args: argparse.Namespace) -> int:
    db = SessionLocal()
    try:
        DatabaseSecretStore(db).set(args.name, args.value)
    finally:
        db.close()
    return 0


async def _reset(learner_id: str) -> None:
    db = SessionLocal()
    gateway = SpeechGateway(get_secret_store(db))
    try:
        service = PracticeService(db, gateway)
        progress = await service.reset_calibration(learner_id)
        word = progress.cur_word.text if progress.cur_word else None
        print(f"{learner_id}: calibration step {progress.calibration_index}, word {word}")
    finally:
        await gateway.aclose()
        db.close()


def cmd_reset_calibration(args: argparse.Namespace) -> int:
    asyncio.run(_reset(args.learner_id))
    return 0


def cmd_diagnose(args: argparse.Namespace) -> int:
    result = diagnose(args.target, args.heard, args.language)
    print(f"best match: {result.best_match}")
    print("target: " + " ".join(result.aligned_target))
    print("heard:  " + " ".join(result.aligned_user))
    print(f"errors: {result.error_count}/{result.phoneme_count}")
    for item in result.error_summary:
        print(f"  {item.position}: {item.category.value} {item.expected} -> {item.actual}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="phonocoach", description="Pronunciation practice engine")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser("init-db", help="Create database tables")
    init_parser.set_defaults(func=cmd_init_db)

    secret_parser = subparsers.add_parser("set-secret", help="Store a backend endpoint or credential")
    secret_parser.add_argument("name")
    secret_parser.add_argument("value")
    secret_parser.set_defaults(func=cmd_set_secret)

    reset_parser = subparsers.add_parser("reset-calibration", help="Send a learner back to calibration")
    reset_parser.add_argument("learner_id")
    reset_parser.set_defaults(func=cmd_reset_calibration)

    diagnose_parser = subparsers.add_parser("diagnose", help="Align a heard transcription with target ones")
    diagnose_parser.add_argument("--target", action="append", required=True, help="Canonical IPA, repeatable")
    diagnose_parser.add_argument("--heard", required=True, help="Recognized IPA")
    diagnose_parser.add_argument("--language", default=None, help="Practice language code, e.g. zh")
    diagnose_parser.set_defaults(func=cmd_diagnose)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    ensure_directories()
    setup_logging("Starting phonocoach ...", level=args.log_level)
    if settings.monitoring.enabled:
        start_monitoring(settings.monitoring.port)

    try:
        return args.func(args)
    except PhonocoachError as e:
        logger.error(f"{e.kind}: {e.message}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
