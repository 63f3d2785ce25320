#!/usr/bin/env python3
"""CLI for course timeslice maintenance tasks.

Usage:
    python -m cli <command>

Commands:
    create-tables          Create any missing database tables
    update-course <id>     Run one course update
    update-all             Run the update cycle for every current course
    reconcile <id>         Rebuild a course's timeslice grids without fetching
"""

import argparse
import asyncio
import sys

from core import get_logger
from core.config import get_settings
from core.database import (
    check_db_connection,
    create_engine,
    create_session_maker,
    dispose_engine,
    init_db,
    session_scope,
)
from core.logger import configure_logging
from core.wiki_client import close_wiki_client
from repositories.course_repository import CourseRepository
from services.collaborators import CsvStructuralCompletenessCache, UpdateCollaborators
from services.course_queue_service import (
    CourseNotFoundError,
    run_course_update,
    run_update_cycle,
)
from services.timeslice_manager import TimesliceConfigurationError, TimesliceManager

logger = get_logger(__name__)


def _collaborators(args: argparse.Namespace) -> UpdateCollaborators:
    collaborators = UpdateCollaborators()
    if getattr(args, "structural_completeness_dir", None):
        collaborators.structural_completeness = CsvStructuralCompletenessCache(
            args.structural_completeness_dir
        )
    return collaborators


def _settings(args: argparse.Namespace):
    settings = get_settings()
    if getattr(args, "bypass_admission_control", False):
        settings = settings.model_copy(update={"bypass_admission_control": True})
    return settings


async def _create_tables() -> int:
    engine = create_engine()
    try:
        await check_db_connection(engine)
        await init_db(engine)
    finally:
        await dispose_engine(engine)
    return 0


async def _update_course(args: argparse.Namespace) -> int:
    engine = create_engine()
    try:
        summary = await run_course_update(
            create_session_maker(engine),
            args.course_id,
            collaborators=_collaborators(args),
            settings=_settings(args),
        )
    except CourseNotFoundError as e:
        logger.error("cli.course_not_found", course_id=e.course_id)
        return 1
    except TimesliceConfigurationError as e:
        logger.error("cli.invalid_configuration", course_id=e.course_id, reason=e.reason)
        return 1
    finally:
        await close_wiki_client()
        await dispose_engine(engine)

    print(summary.model_dump_json(indent=2))
    return 0 if summary.error_count == 0 else 2


async def _update_all(args: argparse.Namespace) -> int:
    engine = create_engine()
    try:
        summaries = await run_update_cycle(
            create_session_maker(engine),
            collaborators=_collaborators(args),
            settings=_settings(args),
        )
    finally:
        await close_wiki_client()
        await dispose_engine(engine)

    logger.info("cli.update_all.completed", courses=len(summaries))
    return 0


async def _reconcile(args: argparse.Namespace) -> int:
    engine = create_engine()
    try:
        async with session_scope(create_session_maker(engine)) as db:
            course = await CourseRepository(db).get_by_id(args.course_id)
            if course is None:
                logger.error("cli.course_not_found", course_id=args.course_id)
                return 1
            result = await TimesliceManager(db, course).reconcile()
    except TimesliceConfigurationError as e:
        logger.error("cli.invalid_configuration", course_id=e.course_id, reason=e.reason)
        return 1
    finally:
        await dispose_engine(engine)

    logger.info(
        "cli.reconciled",
        course_id=args.course_id,
        created=result.timeslices_created,
        deleted=result.timeslices_deleted,
        dependents_deleted=result.dependent_timeslices_deleted,
    )
    return 0


def cmd_create_tables(args: argparse.Namespace) -> int:
    """Create any missing database tables."""
    return asyncio.run(_create_tables())


def cmd_update_course(args: argparse.Namespace) -> int:
    """Run one course update."""
    return asyncio.run(_update_course(args))


def cmd_update_all(args: argparse.Namespace) -> int:
    """Run the update cycle for every current course."""
    return asyncio.run(_update_all(args))


def cmd_reconcile(args: argparse.Namespace) -> int:
    """Rebuild a course's timeslice grids without fetching."""
    return asyncio.run(_reconcile(args))


def _add_update_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--bypass-admission-control",
        action="store_true",
        help="Always refresh article status, however long past updates took",
    )
    parser.add_argument(
        "--structural-completeness-dir",
        help="Directory of cached structural-completeness CSVs to invalidate",
    )


def main(argv: list[str] | None = None) -> int:
    configure_logging()

    parser = argparse.ArgumentParser(
        description="Course timeslice updater CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("create-tables", help="Create any missing database tables")

    update_course = subparsers.add_parser("update-course", help="Run one course update")
    update_course.add_argument("course_id", type=int)
    _add_update_options(update_course)

    update_all = subparsers.add_parser(
        "update-all", help="Run the update cycle for every current course"
    )
    _add_update_options(update_all)

    reconcile = subparsers.add_parser(
        "reconcile", help="Rebuild a course's timeslice grids without fetching"
    )
    reconcile.add_argument("course_id", type=int)

    args = parser.parse_args(argv)

    if args.command == "create-tables":
        return cmd_create_tables(args)
    elif args.command == "update-course":
        return cmd_update_course(args)
    elif args.command == "update-all":
        return cmd_update_all(args)
    elif args.command == "reconcile":
        return cmd_reconcile(args)
    else:
        parser.print_help()
        return 1


if __name__ == "__main__":
    sys.exit(main())
