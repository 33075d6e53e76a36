"""
Key migration orchestrator.

This module provides:
- MigrationOrchestrator: Checkpointed, batched re-encryption of stored
  envelopes under new key material, with rollback

State machine:
    PENDING -> IN_PROGRESS -> COMPLETED | FAILED
    IN_PROGRESS | COMPLETED -> ROLLED_BACK   (explicit rollback)

Migration strategy:
1. Back up the current keys (explicit, required before start)
2. start(): compare-and-set PENDING -> IN_PROGRESS, checkpoint current keys,
   generate target keys
3. run_batch(): re-encrypt up to batch_size pending entries, marking each
   MIGRATED or FAILED; callers invoke it repeatedly
4. When nothing is pending: COMPLETED commits the target keys, FAILED rolls
   back automatically
5. rollback(): re-converts entries migrated by the run, restores checkpointed keys

Per-entry failures are counted and never abort a batch. Failures during
checkpoint creation or key generation abort start() and leave PENDING.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple, Union
from uuid import uuid4

import structlog
from cryptography.hazmat.primitives import constant_time

from .config import INTEGRITY_SAMPLE_SIZE, PROGRESS_EVERY, Settings
from .errors import (
    BackupRequiredError,
    EnvelopeDecodeError,
    MigrationError,
    MigrationStateError,
    OperationFailedError,
    ShieldError,
    SiteMismatchError,
)
from .models import (
    Backup,
    Checkpoint,
    EncryptedEntry,
    EntryState,
    IntegrityReport,
    KeyMaterial,
    MigrationRun,
    MigrationStatus,
    RollbackResult,
    SecurityLevel,
    utcnow,
)
from .reporter import AuditReporter
from .repositories import CheckpointRepository, KeyMaterialRepository, MigrationRunRepository
from .service import ShieldService
from .storage import EntryStore, KeyValueStore

logger = structlog.get_logger(__name__)

# Already reported by the service or executor when raised.
_REPORTED_ERRORS = (OperationFailedError, SiteMismatchError, EnvelopeDecodeError)


class MigrationOrchestrator:
    """
    Drives a key migration over the stored entry corpus.

    One logical run is active at a time; each call does a bounded amount of
    work so it fits within a host request.
    """

    def __init__(
        self,
        store: KeyValueStore,
        entries: EntryStore,
        service: ShieldService,
        reporter: AuditReporter,
        settings: Optional[Settings] = None,
    ) -> None:
        """
        Args:
            store: Persistent store for keys, checkpoint and run state
            entries: Corpus of stored field values
            service: Field protection service used for every crypto step
            reporter: Error and audit reporter
            settings: Batch size defaults and bounds
        """
        self._keys = KeyMaterialRepository(store)
        self._checkpoints = CheckpointRepository(store)
        self._runs = MigrationRunRepository(store)
        self._entries = entries
        self._service = service
        self._reporter = reporter
        self._settings = settings or Settings()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    async def get_status(self) -> MigrationStatus:
        return await self._runs.get_status()

    async def get_run(self) -> Optional[MigrationRun]:
        return await self._runs.get_run()

    async def get_checkpoint(self) -> Optional[Checkpoint]:
        return await self._checkpoints.get()

    async def initialize_keys(
        self, security_level: Union[SecurityLevel, str] = SecurityLevel.STANDARD
    ) -> KeyMaterial:
        """Install first key material; refused while a migration is running."""
        if await self._runs.get_status() is MigrationStatus.IN_PROGRESS:
            raise MigrationStateError("Cannot replace keys while a migration is running")
        if not isinstance(security_level, SecurityLevel):
            security_level = SecurityLevel.from_str(security_level)
        return await self._service.initialize_keys(security_level)

    # ------------------------------------------------------------------
    # Backup
    # ------------------------------------------------------------------

    async def backup_keys(self) -> Backup:
        """
        Retain the current keys as the Backup required before a migration.

        Raises:
            KeyNotFoundError: If no keys are configured
        """
        keys = await self._service.current_keys()
        backup = Backup(key_material=keys)
        await self._keys.save_backup(backup)
        await self._reporter.log_activity(
            "Keys backed up before migration", "info", {"algorithm": keys.algorithm}
        )
        await self._reporter.log_audit_event("keys_backed_up", {"algorithm": keys.algorithm})
        return backup

    async def remove_backup(self) -> bool:
        """
        Discard the Backup once a migration is trusted.

        Raises:
            MigrationStateError: If a migration is in progress
        """
        if await self._runs.get_status() is MigrationStatus.IN_PROGRESS:
            raise MigrationStateError("Cannot remove the key backup while a migration is running")
        removed = await self._keys.delete_backup()
        if removed:
            await self._reporter.log_activity("Backup keys removed")
            await self._reporter.log_audit_event("backup_removed")
        return removed

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    async def start(
        self,
        security_level: Union[SecurityLevel, str] = SecurityLevel.STANDARD,
        batch_size: Optional[int] = None,
        verify_integrity: bool = True,
    ) -> MigrationRun:
        """
        Begin a migration run.

        Args:
            security_level: Security level for the new keys (standard or high)
            batch_size: Entries per run_batch() call
            verify_integrity: Re-read and decrypt each migrated entry

        Returns:
            The IN_PROGRESS MigrationRun

        Raises:
            ValueError: If an argument is out of range
            KeyNotFoundError: If no keys are configured
            BackupRequiredError: If the current keys were not backed up
            MigrationStateError: If a run is already in progress
            MigrationError: If the checkpoint, new keys or run record could not be set up
        """
        level, batch_size, verify_integrity = self._validate(
            security_level, batch_size, verify_integrity
        )
        current = await self._service.current_keys()
        if await self._keys.get_backup() is None:
            raise BackupRequiredError("Back up the current keys before starting a migration")

        observed = await self._runs.raw_status()
        previous = MigrationStatus.from_str(observed) if observed else MigrationStatus.PENDING
        if not previous.allows_new_run:
            raise MigrationStateError("A migration is already in progress")
        if not await self._runs.transition(observed, MigrationStatus.IN_PROGRESS):
            raise MigrationStateError("Another invocation started a migration")

        run_id = uuid4().hex
        context = {
            "run_id": run_id,
            "security_level": level.value,
            "batch_size": batch_size,
            "verify_integrity": verify_integrity,
        }

        stage = "create migration checkpoint"
        checkpoint_saved = False
        prior_checkpoint: Optional[Checkpoint] = None
        try:
            prior_checkpoint = await self._checkpoints.get()
            checkpoint = Checkpoint(
                run_id=run_id,
                key_material=current,
                migration_status=previous,
                encrypted_entry_count=await self._entries.count_envelopes(),
            )
            await self._checkpoints.save(checkpoint)
            checkpoint_saved = True
            await self._reporter.log_audit_event(
                "checkpoint_created",
                {"run_id": run_id, "encrypted_entries_count": checkpoint.encrypted_entry_count},
            )

            stage = "generate new keys"
            target = await self._service.generate_keys(
                level, {"purpose": "migration", "run_id": run_id}
            )

            stage = "record migration run"
            run = MigrationRun(
                run_id=run_id,
                status=MigrationStatus.IN_PROGRESS,
                security_level=level,
                batch_size=batch_size,
                verify_integrity=verify_integrity,
                target_keys=target,
            )
            await self._runs.save_run(run)
        except Exception as e:
            await self._abort_start(checkpoint_saved, prior_checkpoint)
            await self._reporter.log_audit_event("migration_failed", dict(context, error=str(e)))
            raise MigrationError(f"Failed to {stage}: {e}") from e

        await self._reporter.log_audit_event(
            "migration_started", dict(context, algorithm=target.algorithm)
        )
        await self._reporter.log_activity(
            f"Migration started with security level: {level.value}", "info", context
        )
        return run

    async def _abort_start(
        self, checkpoint_saved: bool, prior_checkpoint: Optional[Checkpoint]
    ) -> None:
        """Undo a partial start: put back the earlier checkpoint and leave PENDING."""
        if checkpoint_saved:
            if prior_checkpoint is not None:
                await self._checkpoints.save(prior_checkpoint)
            else:
                await self._checkpoints.delete()
        await self._runs.set_status(MigrationStatus.PENDING)

    def _validate(
        self,
        security_level: Union[SecurityLevel, str],
        batch_size: Optional[int],
        verify_integrity: bool,
    ) -> Tuple[SecurityLevel, int, bool]:
        if isinstance(security_level, SecurityLevel):
            level = security_level
        else:
            level = SecurityLevel.from_str(security_level)

        if batch_size is None:
            batch_size = self._settings.default_batch_size
        if isinstance(batch_size, bool) or not isinstance(batch_size, int):
            raise ValueError(f"Batch size must be an integer, got {batch_size!r}")
        if not 1 <= batch_size <= self._settings.max_batch_size:
            raise ValueError(
                f"Batch size must be between 1 and {self._settings.max_batch_size}"
            )

        if not isinstance(verify_integrity, bool):
            raise ValueError("verify_integrity must be a boolean")
        return level, batch_size, verify_integrity

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    async def run_batch(self) -> MigrationRun:
        """
        Re-encrypt up to ``batch_size`` pending entries.

        Completes the run when no pending entries remain afterwards.

        Raises:
            MigrationStateError: If no run is in progress
            MigrationError: If the run's checkpoint is missing
        """
        run = await self._runs.get_run()
        if run is None or await self._runs.get_status() is not MigrationStatus.IN_PROGRESS:
            raise MigrationStateError("No migration is in progress")
        checkpoint = await self._checkpoints.get()
        if checkpoint is None or checkpoint.run_id != run.run_id or run.target_keys is None:
            raise MigrationError("No migration checkpoint found for the running migration")

        batch = await self._entries.list_pending(run.run_id, run.batch_size)
        for entry in batch:
            await self._migrate_entry(run, entry, checkpoint.key_material)
            run.processed_count += 1
            if run.processed_count % PROGRESS_EVERY == 0:
                await self._reporter.log_audit_event(
                    "migration_progress",
                    {
                        "run_id": run.run_id,
                        "processed": run.processed_count,
                        "migrated": run.migrated_count,
                        "failed": run.failed_count,
                    },
                )
        await self._runs.save_run(run)

        logger.info(
            "migration_batch_done",
            run_id=run.run_id,
            batch=len(batch),
            migrated=run.migrated_count,
            failed=run.failed_count,
        )

        if await self._entries.count_pending(run.run_id) == 0:
            run = await self._finish(run, checkpoint)
        return run

    async def _migrate_entry(
        self, run: MigrationRun, entry: EncryptedEntry, old_keys: KeyMaterial
    ) -> None:
        context = {"run_id": run.run_id, "entry_id": entry.entry_id, "field_id": entry.field_id}
        try:
            plaintext = await self._service.decrypt_value(entry.value, old_keys, context)
            new_value = await self._service.encrypt_value(plaintext, run.target_keys, context)
            updated = await self._entries.update_value(
                entry.entry_id, new_value, run.run_id, EntryState.MIGRATED
            )
            if not updated:
                raise MigrationError(f"Entry {entry.entry_id} disappeared during migration")
        except ShieldError as e:
            run.failed_count += 1
            await self._entries.mark(entry.entry_id, run.run_id, EntryState.FAILED)
            if not isinstance(e, _REPORTED_ERRORS):
                await self._reporter.report(
                    "Entry Migration", self._reporter.classify(e, context)
                )
            await self._reporter.log_audit_event(
                "entry_migration_failed", dict(context, error=str(e))
            )
            return

        run.migrated_count += 1
        if run.verify_integrity and not await self._verify_entry(
            entry.entry_id, plaintext, run.target_keys, context
        ):
            run.integrity_failures += 1
            await self._reporter.log_audit_event("integrity_verification_failed", context)

    async def _verify_entry(
        self,
        entry_id: str,
        expected: str,
        keys: KeyMaterial,
        context: Dict[str, Any],
    ) -> bool:
        stored = await self._entries.get(entry_id)
        if stored is None:
            return False
        try:
            actual = await self._service.decrypt_value(stored.value, keys, context)
        except ShieldError:
            return False
        return constant_time.bytes_eq(actual.encode("utf-8"), expected.encode("utf-8"))

    async def _finish(self, run: MigrationRun, checkpoint: Checkpoint) -> MigrationRun:
        run.completed_time = utcnow()
        duration = (run.completed_time - run.start_time).total_seconds()

        if run.failed_count == 0:
            run.status = MigrationStatus.COMPLETED
            await self._keys.save_backup(Backup(key_material=checkpoint.key_material))
            await self._keys.save_current(run.target_keys)
            await self._runs.save_run(run)
            await self._reporter.log_audit_event(
                "migration_completed",
                {
                    "run_id": run.run_id,
                    "security_level": run.security_level.value,
                    "algorithm": run.target_keys.algorithm,
                    "migrated_entries": run.migrated_count,
                    "integrity_failures": run.integrity_failures,
                    "duration_seconds": duration,
                    "integrity_verified": run.verify_integrity,
                },
            )
            await self._reporter.log_activity("Migration completed successfully")
            return run

        run.status = MigrationStatus.FAILED
        await self._runs.save_run(run)
        await self._reporter.log_audit_event(
            "migration_failed",
            {
                "run_id": run.run_id,
                "error": f"Failed to migrate {run.failed_count} entries",
                "migrated_entries": run.migrated_count,
                "failed_entries": run.failed_count,
                "duration_seconds": duration,
            },
        )
        await self._reporter.log_activity(
            f"Migration failed: {run.failed_count} entries could not be migrated", "error"
        )
        await self._rollback(run, checkpoint, MigrationStatus.FAILED)
        return await self._runs.get_run() or run

    # ------------------------------------------------------------------
    # Rollback
    # ------------------------------------------------------------------

    async def rollback(self) -> RollbackResult:
        """
        Undo the most recent migration.

        Entries migrated by the run are re-encrypted under the checkpointed
        keys, then the checkpointed keys are restored and the Backup and
        Checkpoint discarded.

        Only entries carrying this run's migration mark are reverted. Values
        encrypted under the new keys after a run COMPLETED are left as they
        are and need the run's target keys to decrypt.

        Raises:
            MigrationError: If there is no checkpoint
            MigrationStateError: If the run is not IN_PROGRESS or COMPLETED
        """
        checkpoint = await self._checkpoints.get()
        if checkpoint is None:
            await self._reporter.log_audit_event(
                "migration_rollback_failed", {"error": "No migration checkpoint found"}
            )
            raise MigrationError("No migration checkpoint found")

        run = await self._runs.get_run()
        if run is not None and run.run_id == checkpoint.run_id:
            if run.status not in (MigrationStatus.IN_PROGRESS, MigrationStatus.COMPLETED):
                raise MigrationStateError(f"Cannot roll back a migration in state {run.status}")
        else:
            run = None

        return await self._rollback(run, checkpoint, MigrationStatus.ROLLED_BACK)

    async def _rollback(
        self,
        run: Optional[MigrationRun],
        checkpoint: Checkpoint,
        final_status: MigrationStatus,
    ) -> RollbackResult:
        reverted = 0
        revert_failed = 0
        if run is not None and run.target_keys is not None:
            for entry in await self._entries.list_migrated(run.run_id):
                if await self._revert_entry(entry, run.target_keys, checkpoint.key_material):
                    reverted += 1
                else:
                    revert_failed += 1

        # Envelopes written under the target keys after completion carry no run mark.
        unreverted = 0
        if run is not None and run.status is MigrationStatus.COMPLETED:
            unreverted = max(0, await self._entries.count_envelopes() - reverted - revert_failed)
            if unreverted:
                logger.warning(
                    "rollback_left_unmarked_entries", run_id=run.run_id, count=unreverted
                )

        await self._keys.save_current(checkpoint.key_material)
        await self._keys.delete_backup()
        await self._checkpoints.delete()

        if run is not None:
            run.status = final_status
            run.rolled_back_at = utcnow()
            await self._runs.save_run(run)
        else:
            await self._runs.set_status(final_status)

        result = RollbackResult(
            restored_keys=checkpoint.key_material,
            reverted_count=reverted,
            revert_failed_count=revert_failed,
            unreverted_count=unreverted,
        )
        await self._reporter.log_audit_event(
            "migration_rollback_success",
            {
                "run_id": checkpoint.run_id,
                "automatic": final_status is MigrationStatus.FAILED,
                "algorithm": checkpoint.key_material.algorithm,
                "reverted_entries": reverted,
                "revert_failed_entries": revert_failed,
                "unreverted_entries": unreverted,
            },
        )
        await self._reporter.log_activity(f"Migration rolled back: {result}")
        return result

    async def _revert_entry(
        self, entry: EncryptedEntry, migrated_keys: KeyMaterial, restored_keys: KeyMaterial
    ) -> bool:
        context = {"entry_id": entry.entry_id, "field_id": entry.field_id, "rollback": True}
        try:
            plaintext = await self._service.decrypt_value(entry.value, migrated_keys, context)
            value = await self._service.encrypt_value(plaintext, restored_keys, context)
            await self._entries.update_value(entry.entry_id, value, None, None)
        except ShieldError as e:
            await self._reporter.log_audit_event(
                "entry_rollback_failed", dict(context, error=str(e))
            )
            return False
        return True

    # ------------------------------------------------------------------
    # Verification and log
    # ------------------------------------------------------------------

    async def verify_integrity(self, sample_size: int = INTEGRITY_SAMPLE_SIZE) -> IntegrityReport:
        """
        Decrypt up to ``sample_size`` stored envelopes with the current keys.

        Raises:
            KeyNotFoundError: If no keys are configured
        """
        keys = await self._service.current_keys()
        entries = await self._entries.list_envelopes(sample_size)
        verified = 0
        for entry in entries:
            try:
                await self._service.decrypt_value(
                    entry.value, keys, {"entry_id": entry.entry_id, "purpose": "integrity"}
                )
                verified += 1
            except ShieldError:
                pass

        report = IntegrityReport(
            total_checked=len(entries), verified=verified, failed=len(entries) - verified
        )
        await self._reporter.log_audit_event("data_integrity_check", report.to_dict())
        return report

    async def migration_log(
        self, limit: int = 50, offset: int = 0, event_type: Optional[str] = None
    ) -> Dict[str, Any]:
        """Page of migration audit events, newest first."""
        entries: List[Dict[str, Any]] = await self._reporter.audit_log(limit, offset, event_type)
        return {
            "entries": entries,
            "total_count": await self._reporter.audit_log_count(event_type),
        }
