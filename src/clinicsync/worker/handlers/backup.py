"""Backup queue handlers: database dump and file archive.

The audit entry naming an artifact is written only after the artifact has
been confirmed on disk; a failed run removes whatever partial file it left.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from clinicsync.services.audit import AuditEventType, AuditSeverity, record_audit

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from clinicsync.db.models.jobs import Job
    from clinicsync.worker.handlers import HandlerContext

logger = logging.getLogger(__name__)


class BackupError(Exception):
    """Raised when a backup artifact could not be produced."""


def backup_timestamp(now: datetime | None = None) -> str:
    """ISO timestamp safe for file names (``:`` and ``.`` replaced by ``-``)."""
    now = now or datetime.now(UTC)
    return now.isoformat().replace(":", "-").replace(".", "-")


def dump_url(url: str) -> str:
    """Strip the SQLAlchemy driver suffix so libpq tools accept the URL."""
    scheme, sep, rest = url.partition("://")
    return f"{scheme.split('+', 1)[0]}{sep}{rest}"


def _confirm_artifact(path: Path) -> int:
    if not path.is_file():
        raise BackupError(f"Backup artifact was not created: {path}")
    size = path.stat().st_size
    if size == 0:
        raise BackupError(f"Backup artifact is empty: {path}")
    return size


def _discard(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        logger.warning("Could not remove partial backup %s: %s", path, e)


async def database_backup_handler(
    session: AsyncSession,
    job: Job,
    *,
    context: HandlerContext,
) -> dict[str, Any]:
    """Dump the clinic database with the configured dump utility.

    Expected job payload:
        destination: Directory for the dump (optional, defaults to settings).

    Raises:
        BackupError: If the dump fails, times out or produces no data.
    """
    payload = job.payload_json or {}
    settings = context.settings.backup
    backup_path = Path(payload.get("destination") or settings.directory)
    backup_path.mkdir(parents=True, exist_ok=True)
    backup_file = f"backup-{backup_timestamp()}.sql"
    target = backup_path / backup_file
    database_url = dump_url(settings.database_url or context.settings.database.url)

    logger.info("Starting database backup: file=%s", target)
    try:
        process = await asyncio.create_subprocess_exec(
            settings.dump_command,
            f"--dbname={database_url}",
            f"--file={target}",
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            _, stderr = await asyncio.wait_for(
                process.communicate(), timeout=settings.timeout_seconds
            )
        except TimeoutError as e:
            process.kill()
            await process.wait()
            raise BackupError(
                f"Database dump timed out after {settings.timeout_seconds}s"
            ) from e

        if process.returncode != 0:
            detail = stderr.decode(errors="replace").strip()
            raise BackupError(f"Database dump exited with {process.returncode}: {detail}")

        size = _confirm_artifact(target)
    except (BackupError, OSError):
        _discard(target)
        raise

    await record_audit(
        session,
        event_type=AuditEventType.BACKUP,
        action="database_backup",
        target_type="system",
        severity=AuditSeverity.MEDIUM,
        details={
            "backup_file": backup_file,
            "backup_path": str(backup_path),
            "size_bytes": size,
        },
    )
    logger.info("Database backup created: %s (%d bytes)", target, size)
    return {"success": True, "backupFile": backup_file, "backupPath": str(backup_path)}


async def file_backup_handler(
    session: AsyncSession,
    job: Job,
    *,
    context: HandlerContext,
) -> dict[str, Any]:
    """Archive the configured upload directory as a gzipped tarball.

    Expected job payload:
        destination: Directory for the archive (optional, defaults to settings).
    """
    payload = job.payload_json or {}
    settings = context.settings.backup
    source = Path(settings.file_source_directory)
    if not source.is_dir():
        msg = f"File backup source directory does not exist: {source}"
        raise FileNotFoundError(msg)

    backup_path = Path(payload.get("destination") or settings.directory)
    backup_path.mkdir(parents=True, exist_ok=True)
    base_name = backup_path / f"files-{backup_timestamp()}"
    target = base_name.with_name(base_name.name + ".tar.gz")

    try:
        archive = Path(
            await asyncio.to_thread(
                shutil.make_archive, str(base_name), "gztar", root_dir=str(source)
            )
        )
        size = _confirm_artifact(archive)
    except (BackupError, OSError):
        _discard(target)
        raise

    await record_audit(
        session,
        event_type=AuditEventType.BACKUP,
        action="file_backup",
        target_type="system",
        severity=AuditSeverity.MEDIUM,
        details={
            "backup_file": archive.name,
            "backup_path": str(backup_path),
            "source": str(source),
            "size_bytes": size,
        },
    )
    logger.info("File backup created: %s (%d bytes)", archive, size)
    return {"success": True, "backupFile": archive.name, "backupPath": str(backup_path)}
