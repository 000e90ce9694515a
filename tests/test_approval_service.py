from __future__ import annotations

import pytest

from marketplace.auth import Principal
from marketplace.errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from marketplace.models import Store, StoreStatus
from marketplace.observability.metrics import counter_value
from marketplace.services.approval_service import ApprovalService
from marketplace.storage import Upload


def _draft(username="acme", **overrides):
    draft = {
        "name": "Acme Goods",
        "username": username,
        "description": "<b>Quality</b> goods",
        "email": "owner@acme.test",
        "contact": "555-0101",
        "address": "1 Main Street",
    }
    draft.update(overrides)
    return draft


@pytest.fixture
def service(db_session, storage):
    return ApprovalService(db_session, storage=storage)


def test_submit_creates_pending_inactive_store(service, seller, storage):
    logo = Upload("logo.png", b"\x89PNG", "image/png")

    result = service.submit(seller, _draft(), logo=logo)

    store = result.store
    assert store.status == StoreStatus.PENDING
    assert store.is_active is False
    assert store.owner_id == seller.user_id
    assert store.description == "Quality goods"
    assert store.logo.startswith("https://cdn.test/store-logos/user_seller-")
    assert result.upload_failures == []
    assert len(storage.stored) == 1
    assert counter_value("store_submissions_total") == 1


def test_submit_requires_authentication(service):
    with pytest.raises(AuthorizationError):
        service.submit(None, _draft())


@pytest.mark.parametrize("missing", ["name", "username", "email", "contact", "address"])
def test_submit_rejects_missing_required_field(service, seller, missing):
    with pytest.raises(ValidationError) as excinfo:
        service.submit(seller, _draft(**{missing: "  "}))
    assert excinfo.value.field == missing


def test_submit_rejects_malformed_username(service, seller):
    with pytest.raises(ValidationError):
        service.submit(seller, _draft(username="no spaces allowed"))


def test_username_is_unique_ignoring_case(service, seller, make_store):
    make_store(username="Acme")

    with pytest.raises(ConflictError):
        service.submit(seller, _draft(username="acme"))


def test_owner_can_only_submit_one_store(service, seller):
    service.submit(seller, _draft(username="first"))

    with pytest.raises(ConflictError):
        service.submit(seller, _draft(username="second"))


def test_concurrent_submissions_are_resolved_by_unique_index(service, seller, make_store, db_session, monkeypatch):
    make_store(username="race")
    # Both submitters passed the pre-check before either committed
    monkeypatch.setattr(ApprovalService, "_username_taken", lambda self, key: False)

    with pytest.raises(ConflictError):
        service.submit(seller, _draft(username="RACE"))

    assert db_session.query(Store).filter(Store.username_key == "race").count() == 1
    assert db_session.query(Store).filter(Store.owner_id == seller.user_id).count() == 0


def test_concurrent_submissions_by_same_owner_report_existing_store(
    service, seller, make_store, storage, monkeypatch
):
    make_store(owner_id=seller.user_id, username="first_shop")
    real_check = ApprovalService._owner_has_store
    calls = []

    # The pre-check ran before the other submission committed
    def _stale_first_check(self, owner_id):
        calls.append(owner_id)
        return False if len(calls) == 1 else real_check(self, owner_id)

    monkeypatch.setattr(ApprovalService, "_owner_has_store", _stale_first_check)

    with pytest.raises(ConflictError) as excinfo:
        service.submit(seller, _draft(username="second_shop"), logo=Upload("logo.png", b"img", "image/png"))

    assert excinfo.value.message == "You have already submitted a store"
    assert storage.stored == {}
    assert len(storage.deleted) == 1


def test_logo_failure_still_creates_store(db_session, seller, failing_storage):
    service = ApprovalService(db_session, storage=failing_storage("logo.png"))

    result = service.submit(seller, _draft(), logo=Upload("logo.png", b"img", "image/png"))

    assert result.store.id is not None
    assert result.store.logo is None
    assert [failure.label for failure in result.upload_failures] == ["logo"]


def test_status_for_owner(service, seller, buyer):
    service.submit(seller, _draft())

    assert service.status_for_owner(seller).username == "acme"
    assert service.status_for_owner(buyer) is None


def test_admin_lists_pending_oldest_first(service, admin, make_store):
    first = make_store(status=StoreStatus.PENDING, is_active=False)
    second = make_store(status=StoreStatus.PENDING, is_active=False)
    make_store(status=StoreStatus.APPROVED)

    pending = service.pending_stores(admin)

    assert [store.id for store in pending] == [first.id, second.id]
    assert len(service.list_stores(admin)) == 3


def test_non_admin_cannot_review(service, seller, make_store):
    store = make_store(status=StoreStatus.PENDING, is_active=False)

    with pytest.raises(AuthorizationError):
        service.pending_stores(seller)
    with pytest.raises(AuthorizationError):
        service.decide(seller, store.id, "approved")
    with pytest.raises(AuthorizationError):
        service.toggle_active(seller, store.id)


def test_decide_approves_and_bumps_version(service, admin, make_store):
    store = make_store(status=StoreStatus.PENDING, is_active=False)
    version = store.version

    decided = service.decide(admin, store.id, "approved")

    assert decided.status == StoreStatus.APPROVED
    assert decided.version == version + 1
    # Approval does not activate
    assert decided.is_active is False
    assert counter_value("store_decisions_total", labels={"decision": "approved"}) == 1


def test_decide_same_decision_is_noop(service, admin, make_store):
    store = make_store(status=StoreStatus.APPROVED)
    version = store.version

    service.decide(admin, store.id, StoreStatus.APPROVED)

    assert store.version == version
    assert counter_value("store_decisions_total", labels={"decision": "approved"}) == 0


def test_decide_rejects_unknown_decision(service, admin, make_store):
    store = make_store(status=StoreStatus.PENDING, is_active=False)

    with pytest.raises(ValidationError):
        service.decide(admin, store.id, "pending")
    with pytest.raises(ValidationError):
        service.decide(admin, store.id, "maybe")


def test_decide_unknown_store(service, admin):
    with pytest.raises(NotFoundError):
        service.decide(admin, 999, "approved")


def test_decide_with_stale_expected_status_conflicts(service, admin, make_store):
    store = make_store(status=StoreStatus.REJECTED, is_active=False)

    with pytest.raises(ConflictError):
        service.decide(admin, store.id, "approved", expected_status="pending")


def test_conflicting_concurrent_decisions_one_wins(session_factory, storage, admin, make_store):
    store_id = make_store(status=StoreStatus.PENDING, is_active=False).id
    first, second = session_factory(), session_factory()
    try:
        stale = first.get(Store, store_id)
        assert stale.status == StoreStatus.PENDING

        ApprovalService(second, storage=storage).decide(admin, store_id, "approved")

        with pytest.raises(ConflictError):
            ApprovalService(first, storage=storage).decide(admin, store_id, "rejected")

        first.expire_all()
        assert first.get(Store, store_id).status == StoreStatus.APPROVED
        assert counter_value("cas_conflicts_total", labels={"entity": "store"}) == 1
    finally:
        first.close()
        second.close()


def test_identical_concurrent_decisions_converge(session_factory, storage, admin, make_store):
    store_id = make_store(status=StoreStatus.PENDING, is_active=False).id
    first, second = session_factory(), session_factory()
    try:
        first.get(Store, store_id).status

        ApprovalService(second, storage=storage).decide(admin, store_id, "rejected")
        result = ApprovalService(first, storage=storage).decide(admin, store_id, "rejected")

        assert result.status == StoreStatus.REJECTED
    finally:
        first.close()
        second.close()


def test_activation_requires_approval(service, admin, make_store):
    store = make_store(status=StoreStatus.PENDING, is_active=False)

    with pytest.raises(ConflictError):
        service.set_active(admin, store.id, True)
    assert store.is_active is False


def test_toggle_active_flips_flag(service, admin, make_store):
    store = make_store(status=StoreStatus.APPROVED, is_active=False)

    assert service.toggle_active(admin, store.id).is_active is True
    assert service.toggle_active(admin, store.id).is_active is False


def test_set_active_to_current_value_is_noop(service, admin, make_store):
    store = make_store(status=StoreStatus.APPROVED, is_active=True)
    version = store.version

    service.set_active(admin, store.id, True)

    assert store.version == version


def test_rejecting_does_not_deactivate(service, admin, make_store):
    store = make_store(status=StoreStatus.APPROVED, is_active=True)

    service.decide(admin, store.id, "rejected")

    assert store.status == StoreStatus.REJECTED
    assert store.is_active is True


def test_owner_cannot_be_reassigned(make_store, db_session):
    store = make_store()

    with pytest.raises(ValidationError):
        store.owner_id = "someone_else"


def test_admin_ids_from_config_grant_admin():
    actor = Principal.from_session({"user_id": "user_root"}, admin_user_ids=("user_root",))

    assert actor.is_admin is True
    assert Principal.from_session({}) is None
