"""Script to run Alembic migrations."""

import argparse
import sys
from pathlib import Path

# Run from the repository root so alembic.ini and the package resolve
ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(ROOT))

from alembic.config import Config
from alembic import command


def main() -> None:
    parser = argparse.ArgumentParser(description="Run Alembic migrations")
    parser.add_argument(
        "--create",
        type=str,
        help="Create a new migration with the given message",
    )
    parser.add_argument(
        "--downgrade",
        type=int,
        help="Downgrade by N revisions",
    )
    args = parser.parse_args()

    alembic_cfg = Config(str(ROOT / "alembic.ini"))
    alembic_cfg.set_main_option("script_location", str(ROOT / "alembic"))

    if args.create:
        command.revision(alembic_cfg, autogenerate=True, message=args.create)
    elif args.downgrade:
        command.downgrade(alembic_cfg, f"-{args.downgrade}")
    else:
        command.upgrade(alembic_cfg, "head")


if __name__ == "__main__":
    main()
