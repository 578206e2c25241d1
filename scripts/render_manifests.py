"""
Render the child objects of a MusicService without a cluster.

Reads a MusicService YAML document and prints the StatefulSets, Services
and autoscalers the operator would apply for it.

Usage:
    python scripts/render_manifests.py radio.yaml
    python scripts/render_manifests.py radio.yaml --engine mysql --kind StatefulSet
"""
import argparse
import sys

from music_operator.config.logging import configure_logging, get_logger
from music_operator.config.settings import settings
from music_operator.exceptions import OperatorException
from music_operator.services.database_engine import get_engine
from music_operator.utils.manifests import load_music_service, render_manifests

logger = get_logger(__name__)


def main() -> int:
    parser = argparse.ArgumentParser(description="Render MusicService child manifests")
    parser.add_argument("path", help="MusicService YAML file ('-' for stdin)")
    parser.add_argument("--engine", default=settings.database_engine, help="Database engine (mariadb/mysql)")
    parser.add_argument("--kind", action="append", dest="kinds", help="Only render this kind (repeatable)")
    args = parser.parse_args()

    configure_logging()

    if args.path == "-":
        text = sys.stdin.read()
    else:
        with open(args.path, encoding="utf-8") as handle:
            text = handle.read()

    try:
        ms = load_music_service(text)
        output = render_manifests(ms, get_engine(args.engine), kinds=args.kinds)
    except OperatorException as e:
        logger.error("render_failed", path=args.path, error=e.message, details=e.details)
        print(f"❌ {e.message}", file=sys.stderr)
        return 1

    sys.stdout.write(output)
    return 0


if __name__ == "__main__":
    sys.exit(main())
