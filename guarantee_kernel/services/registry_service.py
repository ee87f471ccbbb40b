"""
guarantee_kernel.services.registry_service -- Application/Draft registry.

Responsibility:
    Durable home of Applications and DraftCertificates.  Every stage write
    is a compare-and-set on the stored record, so two writers racing on
    the same ``expected_from`` cannot both win.

Architecture position:
    Kernel > Services.  May import from domain/ and db/.

Invariants enforced:
    - ``advance`` writes only legal transitions (``check_transition``) and
      only when the stored stage still equals ``expected_from``.
    - An approved draft is never written again.
    - Records are looked up by ``request_id``; ``list_for_party`` goes
      through a per-address index.

Failure modes:
    - ApplicationNotFoundError / DraftNotFoundError on missing records.
    - ApplicationAlreadyExistsError on duplicate create.
    - StaleStageError when the compare-and-set loses.
    - InvalidTransitionError on an illegal stage delta.
    - ImmutabilityViolationError on writes to an approved draft.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from typing import Any

from guarantee_kernel.db.kv_store import KeyValueStore
from guarantee_kernel.domain.application import (
    Application,
    DraftCertificate,
    DraftStatus,
    normalize_address,
)
from guarantee_kernel.domain.clock import Clock, SystemClock
from guarantee_kernel.domain.stages import Stage, check_transition
from guarantee_kernel.exceptions import (
    ApplicationAlreadyExistsError,
    ApplicationNotFoundError,
    DraftNotFoundError,
    ImmutabilityViolationError,
    StaleStageError,
)
from guarantee_kernel.logging_config import get_logger

logger = get_logger("services.registry")


def application_key(request_id: str) -> str:
    return f"application:{request_id}"


def draft_key(request_id: str) -> str:
    return f"draft:{request_id}"


def party_key(address: str) -> str:
    return f"party:{normalize_address(address)}"


class ApplicationRegistry:
    """Versioned store of Applications and their draft certificates."""

    def __init__(self, store: KeyValueStore, clock: Clock | None = None) -> None:
        self._store = store
        self._clock = clock or SystemClock()

    # ------------------------------------------------------------------
    # Applications
    # ------------------------------------------------------------------

    def find(self, request_id: str) -> Application | None:
        data = self._store.get(application_key(request_id))
        return Application.from_json(data) if data is not None else None

    def get(self, request_id: str) -> Application:
        application = self.find(request_id)
        if application is None:
            raise ApplicationNotFoundError(request_id)
        return application

    def create(self, application: Application) -> Application:
        """Register a new stage-1 Application.

        Raises:
            ApplicationAlreadyExistsError: request id already registered.
        """
        if not self._store.compare_and_set(
            application_key(application.request_id), application.to_json(), None
        ):
            raise ApplicationAlreadyExistsError(application.request_id)

        for address in set(application.parties()):
            self._index_party(address, application.request_id)

        logger.info(
            "application_registered",
            extra={
                "request_id": application.request_id,
                "stage": int(application.current_stage),
            },
        )
        return application

    def advance(
        self,
        request_id: str,
        expected_from: Stage,
        to: Stage,
        **changes: Any,
    ) -> Application:
        """
        Compare-and-set ``current_stage`` from ``expected_from`` to ``to``.

        ``changes`` are extra Application fields written in the same record
        (certificate number, proof of shipment, ...).

        Raises:
            InvalidTransitionError: ``expected_from -> to`` is not legal.
            ApplicationNotFoundError: no such Application.
            StaleStageError: the stored stage is not ``expected_from``, or
                another writer won the compare-and-set.
        """
        check_transition(expected_from, to)
        key = application_key(request_id)
        data, version = self._store.get_versioned(key)
        if data is None:
            raise ApplicationNotFoundError(request_id)

        current = Application.from_json(data)
        if current.current_stage != expected_from:
            raise StaleStageError(request_id, int(expected_from), int(current.current_stage))

        updated = current.with_stage(to, self._clock.now(), **changes)
        if not self._store.compare_and_set(key, updated.to_json(), version):
            actual = self.find(request_id)
            raise StaleStageError(
                request_id,
                int(expected_from),
                int(actual.current_stage) if actual is not None else None,
            )

        logger.info(
            "stage_advanced",
            extra={
                "request_id": request_id,
                "from_stage": int(expected_from),
                "to_stage": int(to),
                "status": updated.status,
            },
        )
        return updated

    def update(
        self,
        request_id: str,
        expected_stage: Stage,
        **changes: Any,
    ) -> Application:
        """Write evidence fields without moving the stage pointer."""
        key = application_key(request_id)
        data, version = self._store.get_versioned(key)
        if data is None:
            raise ApplicationNotFoundError(request_id)

        current = Application.from_json(data)
        if current.current_stage != expected_stage:
            raise StaleStageError(request_id, int(expected_stage), int(current.current_stage))

        updated = replace(current, last_updated=self._clock.now(), **changes)
        if not self._store.compare_and_set(key, updated.to_json(), version):
            actual = self.find(request_id)
            raise StaleStageError(
                request_id,
                int(expected_stage),
                int(actual.current_stage) if actual is not None else None,
            )
        logger.info(
            "application_updated",
            extra={"request_id": request_id, "fields": sorted(changes)},
        )
        return updated

    def list_for_party(self, address: str) -> list[Application]:
        """Applications where ``address`` is the buyer or the seller, newest first."""
        request_ids = self._store.get(party_key(address)) or []
        applications = [
            app for app in (self.find(rid) for rid in request_ids) if app is not None
        ]
        return sorted(applications, key=lambda a: a.last_updated, reverse=True)

    def _index_party(self, address: str, request_id: str) -> None:
        key = party_key(address)
        while True:
            ids, version = self._store.get_versioned(key)
            ids = ids or []
            if request_id in ids:
                return
            if self._store.compare_and_set(key, ids + [request_id], version):
                return

    # ------------------------------------------------------------------
    # Draft certificates
    # ------------------------------------------------------------------

    def find_draft(self, request_id: str) -> DraftCertificate | None:
        data = self._store.get(draft_key(request_id))
        return DraftCertificate.from_json(data) if data is not None else None

    def get_draft(self, request_id: str) -> DraftCertificate:
        draft = self.find_draft(request_id)
        if draft is None:
            raise DraftNotFoundError(request_id)
        return draft

    def create_draft(self, draft: DraftCertificate) -> DraftCertificate:
        """Store the draft; a second create for the same request is a no-op."""
        if self._store.compare_and_set(draft_key(draft.request_id), draft.to_json(), None):
            logger.info(
                "draft_created",
                extra={"request_id": draft.request_id, "guarantee_no": draft.guarantee_no},
            )
            return draft
        return self.get_draft(draft.request_id)

    def mark_seller_approved(self, request_id: str, at: datetime) -> DraftCertificate:
        """Record the seller's approval on a draft that is not yet binding."""
        return self._write_draft(
            request_id,
            lambda d: d if d.seller_approved_at else replace(d, seller_approved_at=at),
        )

    def approve_draft(self, request_id: str, at: datetime) -> DraftCertificate:
        """Convert the draft into its binding AWAITING FEE PAYMENT record."""
        draft = self._write_draft(
            request_id,
            lambda d: replace(
                d,
                status=DraftStatus.AWAITING_FEE_PAYMENT,
                seller_approved_at=d.seller_approved_at or at,
                approved_at=at,
            ),
        )
        logger.info("draft_approved", extra={"request_id": request_id})
        return draft

    def discard_draft(self, request_id: str) -> bool:
        """Delete a rejected draft.  Returns False when there was none."""
        draft = self.find_draft(request_id)
        if draft is not None and draft.is_approved:
            raise ImmutabilityViolationError(
                "DraftCertificate", request_id, "approved drafts cannot be discarded"
            )
        deleted = self._store.delete(draft_key(request_id))
        if deleted:
            logger.info("draft_discarded", extra={"request_id": request_id})
        return deleted

    def _write_draft(self, request_id, change) -> DraftCertificate:
        key = draft_key(request_id)
        while True:
            data, version = self._store.get_versioned(key)
            if data is None:
                raise DraftNotFoundError(request_id)
            current = DraftCertificate.from_json(data)
            if current.is_approved:
                raise ImmutabilityViolationError(
                    "DraftCertificate", request_id, "draft is already approved"
                )
            updated = change(current)
            if updated == current:
                return current
            if self._store.compare_and_set(key, updated.to_json(), version):
                return updated
