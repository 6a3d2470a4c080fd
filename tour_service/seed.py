"""Development data loader.

Usage::

    python -m tour_service.seed --import dev-data/tours.json
    python -m tour_service.seed --delete
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

from pydantic import ValidationError as PydanticValidationError

from . import crud, db
from .errors import AppError, normalize_store_error
from .logger import logger
from .models import new_tour_document
from .schemas import TourCreate


def load_tours(path: str | Path) -> list[dict]:
    """Read a JSON array of tours and validate each one into a new document."""
    with open(path, encoding="utf-8") as f:
        raw_tours = json.load(f)
    if not isinstance(raw_tours, list):
        raise ValueError(f"{path} must contain a JSON array of tours")
    return [
        new_tour_document(TourCreate.model_validate(item).model_dump(exclude_none=True))
        for item in raw_tours
    ]


async def import_tours(path: str | Path) -> int:
    documents = load_tours(path)
    if not documents:
        return 0
    async with crud.store_errors("seed import"):
        result = await db.get_collection(db.TOURS).insert_many(documents)
    return len(result.inserted_ids)


async def delete_tours() -> int:
    async with crud.store_errors("seed delete"):
        result = await db.get_collection(db.TOURS).delete_many({})
    return result.deleted_count


async def _run(args: argparse.Namespace) -> None:
    try:
        if args.import_path:
            await db.ensure_indexes()
            count = await import_tours(args.import_path)
            logger.info(f"Data successfully loaded: {count} tours")
        else:
            count = await delete_tours()
            logger.info(f"Data successfully deleted: {count} tours")
    finally:
        await db.dispose_client()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="python -m tour_service.seed", description=__doc__.splitlines()[0])
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--import", dest="import_path", metavar="FILE", help="load tours from a JSON file")
    group.add_argument("--delete", action="store_true", help="delete every tour")
    args = parser.parse_args(argv)

    try:
        asyncio.run(_run(args))
    except PydanticValidationError as e:
        logger.error(normalize_store_error(e).message)
        return 1
    except AppError as e:
        logger.error(e.message)
        return 1
    except (OSError, ValueError) as e:
        logger.error(f"Could not load data: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
