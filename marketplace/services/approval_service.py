from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from marketplace.auth import Principal, require_admin, require_principal
from marketplace.config import Config
from marketplace.errors import ConflictError, NotFoundError, UpstreamError, ValidationError
from marketplace.models import Store, StoreStatus
from marketplace.observability import increment_counter, record_event
from marketplace.services.optimistic import compare_and_swap, optimistic_update
from marketplace.storage import (
    BlobStorage,
    Upload,
    UploadFailure,
    build_blob_storage,
    discard_uploads,
    timestamp_ms,
    upload_many,
)
from marketplace.validation import (
    clean_text,
    normalize_username,
    require_fields,
    validate_email,
)

REQUIRED_STORE_FIELDS = ("name", "username", "email", "contact", "address")
DECISIONS = {StoreStatus.APPROVED, StoreStatus.REJECTED}


@dataclass
class SubmissionResult:
    store: Store
    upload_failures: List[UploadFailure] = field(default_factory=list)


def get_owned_store(db: Session, actor: Optional[Principal]) -> Store:
    """Return the store owned by the acting principal or raise NotFoundError."""
    actor = require_principal(actor)
    store = db.query(Store).filter(Store.owner_id == actor.user_id).first()
    if store is None:
        raise NotFoundError("store", f"owner={actor.user_id}")
    return store


class ApprovalService:
    """Admission of stores to the marketplace: submission, admin decision, activation."""

    def __init__(
        self,
        db_session: Session,
        config: type[Config] = Config,
        storage: Optional[BlobStorage] = None,
    ) -> None:
        self.db = db_session
        self.config = config
        self.storage = storage or build_blob_storage(config)
        self.logger = logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Seller flows
    # ------------------------------------------------------------------
    def submit(
        self,
        actor: Optional[Principal],
        draft: Dict[str, Any],
        logo: Optional[Upload] = None,
    ) -> SubmissionResult:
        actor = require_principal(actor)
        fields = require_fields(draft, REQUIRED_STORE_FIELDS)
        username_key = normalize_username(fields["username"])
        validate_email(fields["email"])

        if self._owner_has_store(actor.user_id):
            raise ConflictError("You have already submitted a store", owner_id=actor.user_id)
        if self._username_taken(username_key):
            raise ConflictError(
                "This username is already taken. Please choose another one.",
                username=fields["username"],
            )

        logo_url = None
        logo_path = None
        failures: List[UploadFailure] = []
        if logo is not None:
            path = f"{actor.user_id}-{timestamp_ms()}.{logo.extension}"
            urls, failures = upload_many(
                self.storage, self.config.LOGO_BUCKET, [("logo", path, logo)]
            )
            if urls:
                logo_url, logo_path = urls[0], path

        store = Store(
            owner_id=actor.user_id,
            name=fields["name"],
            username=fields["username"],
            username_key=username_key,
            description=clean_text(draft.get("description")),
            email=fields["email"],
            contact=fields["contact"],
            address=fields["address"],
            logo=logo_url,
            status=StoreStatus.PENDING,
            is_active=False,
        )
        self.db.add(store)
        try:
            self.db.commit()
        except IntegrityError as exc:
            # A concurrent submission won one of the unique indexes
            self.db.rollback()
            self._discard_logo(logo_path)
            increment_counter("store_submissions_rejected_total", labels={"reason": "duplicate"})
            if self._owner_has_store(actor.user_id):
                raise ConflictError("You have already submitted a store", owner_id=actor.user_id) from exc
            raise ConflictError(
                "This username is already taken. Please choose another one.",
                username=fields["username"],
            ) from exc
        except SQLAlchemyError as exc:
            self.db.rollback()
            self._discard_logo(logo_path)
            self.logger.error("Could not submit store %s: %s", fields["username"], exc)
            raise UpstreamError("Could not submit store; please retry") from exc

        increment_counter("store_submissions_total")
        record_event("store_submitted", {"store_id": store.id, "username": store.username})
        self.logger.info(
            "Store %s submitted for review",
            store.id,
            extra={"username": store.username, "owner_id": actor.user_id},
        )
        return SubmissionResult(store=store, upload_failures=failures)

    def status_for_owner(self, actor: Optional[Principal]) -> Optional[Store]:
        actor = require_principal(actor)
        return self.db.query(Store).filter(Store.owner_id == actor.user_id).first()

    # ------------------------------------------------------------------
    # Admin flows
    # ------------------------------------------------------------------
    def pending_stores(self, actor: Optional[Principal]) -> List[Store]:
        require_admin(actor)
        return (
            self.db.query(Store)
            .filter(Store.status == StoreStatus.PENDING)
            .order_by(Store.created_at.asc(), Store.id.asc())
            .all()
        )

    def list_stores(self, actor: Optional[Principal]) -> List[Store]:
        require_admin(actor)
        return self.db.query(Store).order_by(Store.created_at.desc(), Store.id.desc()).all()

    def decide(
        self,
        actor: Optional[Principal],
        store_id: int,
        decision: StoreStatus | str,
        expected_status: Optional[StoreStatus | str] = None,
    ) -> Store:
        """
        Approve or reject a store.

        Re-applying the decision the store already holds is a no-op. The
        write is conditional on the status read here (or `expected_status`
        when given), so of two admins deciding differently at once exactly
        one wins and the other gets ConflictError.
        """
        require_admin(actor)
        decision_enum = self._parse_status(decision, "decision")
        if decision_enum not in DECISIONS:
            raise ValidationError("Decision must be 'approved' or 'rejected'", field="decision")

        store = self._get_store(store_id)
        current = StoreStatus(store.status)
        if expected_status is not None:
            expected = self._parse_status(expected_status, "expected_status")
            if expected != current:
                raise ConflictError(
                    f"Store {store_id} is {current.value}, not {expected.value}; reload and retry",
                    current=current.value,
                )

        if current == decision_enum:
            return store

        try:
            optimistic_update(
                self.db,
                store,
                lambda: compare_and_swap(
                    self.db,
                    Store,
                    store.id,
                    expected={"status": current},
                    values={"status": decision_enum},
                    entity="store",
                ),
                status=decision_enum,
            )
        except ConflictError:
            self.db.refresh(store)
            if expected_status is None and StoreStatus(store.status) == decision_enum:
                # Another admin already made the same call
                return store
            raise

        increment_counter("store_decisions_total", labels={"decision": decision_enum.value})
        record_event(
            "store_decided",
            {"store_id": store.id, "from": current.value, "to": decision_enum.value, "by": actor.user_id},
        )
        self.logger.info(
            "Store %s moved from %s to %s",
            store.id,
            current.value,
            decision_enum.value,
            extra={"admin_id": actor.user_id},
        )
        return store

    def set_active(self, actor: Optional[Principal], store_id: int, active: bool) -> Store:
        require_admin(actor)
        store = self._get_store(store_id)
        active = bool(active)
        if store.is_active == active:
            return store
        if active and not store.is_approved:
            raise ConflictError(
                f"Store {store_id} must be approved before it can be activated",
                status=StoreStatus(store.status).value,
            )

        expected: Dict[str, Any] = {"is_active": store.is_active}
        if active:
            expected["status"] = StoreStatus.APPROVED

        optimistic_update(
            self.db,
            store,
            lambda: compare_and_swap(
                self.db, Store, store.id, expected=expected, values={"is_active": active}, entity="store"
            ),
            is_active=active,
        )
        increment_counter("store_activation_changes_total", labels={"active": str(active).lower()})
        self.logger.info(
            "Store %s %s",
            store.id,
            "activated" if active else "deactivated",
            extra={"admin_id": actor.user_id},
        )
        return store

    def toggle_active(self, actor: Optional[Principal], store_id: int) -> Store:
        require_admin(actor)
        store = self._get_store(store_id)
        return self.set_active(actor, store_id, not store.is_active)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _username_taken(self, username_key: str) -> bool:
        return (
            self.db.query(Store.id).filter(Store.username_key == username_key).first()
            is not None
        )

    def _discard_logo(self, path: Optional[str]) -> None:
        if path is not None:
            discard_uploads(self.storage, self.config.LOGO_BUCKET, [path])

    def _owner_has_store(self, owner_id: str) -> bool:
        return self.db.query(Store.id).filter(Store.owner_id == owner_id).first() is not None

    def _get_store(self, store_id: int) -> Store:
        store = self.db.get(Store, store_id)
        if store is None:
            raise NotFoundError("store", store_id)
        return store

    @staticmethod
    def _parse_status(value: StoreStatus | str, field_name: str) -> StoreStatus:
        if isinstance(value, StoreStatus):
            return value
        try:
            return StoreStatus(str(value).strip().lower())
        except ValueError:
            raise ValidationError(f"Unknown store status: {value}", field=field_name) from None
