"""Integration tests for registrations_service endpoints."""

import uuid
from datetime import timedelta

import pytest
from services.registrations_service.models import RegistrationPaymentStatus
from tests.factories import (
    MembershipFactory,
    UserFactory,
    UserMembershipFactory,
    UserRegistrationFactory,
    seed,
    seed_registration,
)


async def _logged_in_user(db, auth, **overrides):
    user = UserFactory.create(**overrides)
    await seed(db, user)
    auth.login(user.id)
    return user


async def _full_category(db, capacity=1):
    registration, category = await seed_registration(db, max_capacity=capacity)
    await seed(
        db,
        *[
            UserRegistrationFactory.create(
                registration_id=registration.id, category_id=category.id
            )
            for _ in range(capacity)
        ],
    )
    return registration, category


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.integration
async def test_health(registrations_client):
    response = await registrations_client.get("/health")
    assert response.status_code == 200
    assert response.json()["service"] == "registrations"


# ---------------------------------------------------------------------------
# Registration detail
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.integration
async def test_get_registration_reports_status_and_availability(
    registrations_client, db_session, auth
):
    await _logged_in_user(db_session, auth)
    registration, category = await _full_category(db_session, capacity=2)

    response = await registrations_client.get(f"/registrations/{registration.id}")

    assert response.status_code == 200, response.text
    data = response.json()
    assert data["status"] == "open"
    assert data["status_text"]
    [category_data] = data["categories"]
    assert category_data["id"] == str(category.id)
    assert category_data["occupancy"] == 2
    assert category_data["is_open"] is False
    assert category_data["spots_remaining"] == 0


@pytest.mark.asyncio
@pytest.mark.integration
async def test_get_unknown_registration_returns_404(registrations_client):
    response = await registrations_client.get(f"/registrations/{uuid.uuid4()}")
    assert response.status_code == 404


# ---------------------------------------------------------------------------
# Eligibility
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.integration
async def test_eligibility_without_membership(registrations_client, db_session, auth):
    await _logged_in_user(db_session, auth)
    adult = MembershipFactory.create(name="Adult")
    await seed(db_session, adult)
    registration, _ = await seed_registration(
        db_session, required_membership_id=adult.id
    )

    response = await registrations_client.post(
        f"/registrations/{registration.id}/eligibility", json={}
    )

    assert response.status_code == 200, response.text
    data = response.json()
    assert data["eligible"] is False
    assert "Adult" in data["error"]


@pytest.mark.asyncio
@pytest.mark.integration
async def test_eligibility_with_category_membership(
    registrations_client, db_session, auth
):
    user = await _logged_in_user(db_session, auth)
    adult, goalie = MembershipFactory.create(name="Adult"), MembershipFactory.create(
        name="Goalie"
    )
    await seed(
        db_session,
        adult,
        goalie,
        UserMembershipFactory.create(user_id=user.id, membership_id=goalie.id),
    )
    registration, category = await seed_registration(
        db_session,
        required_membership_id=adult.id,
        category_overrides={"required_membership_id": goalie.id},
    )

    response = await registrations_client.post(
        f"/registrations/{registration.id}/eligibility",
        json={"category_id": str(category.id)},
    )

    assert response.status_code == 200, response.text
    data = response.json()
    assert data["eligible"] is True
    assert data["source"] == "category"
    assert data["matched_membership_name"] == "Goalie"


@pytest.mark.asyncio
@pytest.mark.integration
async def test_eligibility_with_foreign_category_returns_404(
    registrations_client, db_session, auth
):
    await _logged_in_user(db_session, auth)
    registration, _ = await seed_registration(db_session)
    _, other_category = await seed_registration(db_session)

    response = await registrations_client.post(
        f"/registrations/{registration.id}/eligibility",
        json={"category_id": str(other_category.id)},
    )
    assert response.status_code == 404


@pytest.mark.asyncio
@pytest.mark.integration
async def test_my_memberships_are_consolidated(registrations_client, db_session, auth):
    user = await _logged_in_user(db_session, auth)
    adult = MembershipFactory.create(name="Adult")
    first = UserMembershipFactory.create(user_id=user.id, membership_id=adult.id)
    renewal = UserMembershipFactory.create(
        user_id=user.id,
        membership_id=adult.id,
        valid_from=first.valid_until + timedelta(days=1),
        valid_until=first.valid_until + timedelta(days=365),
    )
    await seed(db_session, adult, first, renewal)

    response = await registrations_client.get("/registrations/me/memberships")

    assert response.status_code == 200, response.text
    [entry] = response.json()
    assert entry["membership_name"] == "Adult"
    assert entry["purchase_count"] == 2
    assert entry["valid_until"] == renewal.valid_until.isoformat()
    assert entry["status"] == "active"


# ---------------------------------------------------------------------------
# Registration checks
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.integration
async def test_can_register_reports_duplicates(registrations_client, db_session, auth):
    user = await _logged_in_user(db_session, auth)
    registration, category = await seed_registration(db_session)

    response = await registrations_client.get(
        f"/registrations/{registration.id}/can-register"
    )
    assert response.json()["can_register"] is True

    await seed(
        db_session,
        UserRegistrationFactory.create(
            user_id=user.id,
            registration_id=registration.id,
            category_id=category.id,
            payment_status=RegistrationPaymentStatus.PAID,
        ),
    )
    response = await registrations_client.get(
        f"/registrations/{registration.id}/can-register"
    )

    assert response.status_code == 200
    data = response.json()
    assert data["can_register"] is False
    assert data["reason"] == "duplicate_registration"
    assert data["error"] == "User is already registered for this event"


@pytest.mark.asyncio
@pytest.mark.integration
async def test_validate_checks_payment_method_when_money_is_due(
    registrations_client, db_session, auth
):
    await _logged_in_user(db_session, auth, stripe_payment_method_id=None)
    registration, _ = await seed_registration(db_session)

    paid = await registrations_client.post(
        f"/registrations/{registration.id}/validate", json={"effective_price": 5000}
    )
    free = await registrations_client.post(
        f"/registrations/{registration.id}/validate", json={"effective_price": 0}
    )

    assert paid.status_code == 200, paid.text
    assert paid.json()["reason"] == "invalid_payment_method"
    assert free.json()["can_register"] is True


@pytest.mark.asyncio
@pytest.mark.integration
async def test_validate_rejects_negative_price(registrations_client, db_session, auth):
    await _logged_in_user(db_session, auth)
    registration, _ = await seed_registration(db_session)

    response = await registrations_client.post(
        f"/registrations/{registration.id}/validate", json={"effective_price": -1}
    )
    assert response.status_code == 422


# ---------------------------------------------------------------------------
# Waitlists
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.integration
async def test_join_and_leave_waitlist(registrations_client, db_session, auth, notifier):
    user = await _logged_in_user(db_session, auth)
    registration, category = await _full_category(db_session)

    response = await registrations_client.post(
        f"/registrations/{registration.id}/waitlist",
        json={"category_id": str(category.id)},
    )

    assert response.status_code == 201, response.text
    entry = response.json()
    assert entry["position"] == 1
    assert entry["user_id"] == str(user.id)
    assert len(notifier.of_type("waitlist_joined")) == 1

    response = await registrations_client.delete(
        f"/registrations/waitlist/{entry['id']}"
    )
    assert response.status_code == 200, response.text
    assert response.json()["removed_at"] is not None


@pytest.mark.asyncio
@pytest.mark.integration
async def test_waitlist_rejections(registrations_client, db_session, auth):
    await _logged_in_user(db_session, auth)
    open_registration, open_category = await seed_registration(
        db_session, max_capacity=10
    )

    response = await registrations_client.post(
        f"/registrations/{open_registration.id}/waitlist",
        json={"category_id": str(open_category.id)},
    )
    assert response.status_code == 400
    assert "not at capacity" in response.json()["detail"]

    await _logged_in_user(db_session, auth, stripe_payment_method_id=None)
    registration, category = await _full_category(db_session)
    response = await registrations_client.post(
        f"/registrations/{registration.id}/waitlist",
        json={"category_id": str(category.id)},
    )
    assert response.status_code == 400
    assert "payment method" in response.json()["detail"]


@pytest.mark.asyncio
@pytest.mark.integration
async def test_leaving_someone_elses_entry_returns_404(
    registrations_client, db_session, auth
):
    await _logged_in_user(db_session, auth)
    registration, category = await _full_category(db_session)
    response = await registrations_client.post(
        f"/registrations/{registration.id}/waitlist",
        json={"category_id": str(category.id)},
    )
    entry_id = response.json()["id"]

    await _logged_in_user(db_session, auth)
    response = await registrations_client.delete(f"/registrations/waitlist/{entry_id}")
    assert response.status_code == 404


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.integration
async def test_capacity_report_requires_admin(registrations_client, db_session, auth):
    registration, _ = await _full_category(db_session, capacity=3)
    await _logged_in_user(db_session, auth)

    response = await registrations_client.get(
        f"/admin/registrations/{registration.id}/capacity"
    )
    assert response.status_code == 403

    auth.login_admin()
    response = await registrations_client.get(
        f"/admin/registrations/{registration.id}/capacity"
    )
    assert response.status_code == 200, response.text
    [row] = response.json()
    assert row["occupancy"] == 3
    assert row["paid_count"] == 3
    assert row["is_open"] is False


@pytest.mark.asyncio
@pytest.mark.integration
async def test_admin_waitlist_and_claim_release(registrations_client, db_session, auth):
    registration, category = await _full_category(db_session)
    await _logged_in_user(db_session, auth)
    await registrations_client.post(
        f"/registrations/{registration.id}/waitlist",
        json={"category_id": str(category.id)},
    )

    auth.login_admin()
    response = await registrations_client.get(
        f"/admin/registrations/{registration.id}/categories/{category.id}/waitlist"
    )
    assert response.status_code == 200, response.text
    assert [e["position"] for e in response.json()] == [1]

    response = await registrations_client.post("/admin/registrations/claims/release")
    assert response.status_code == 200
    assert response.json() == {"released": 0}

    response = await registrations_client.get(
        f"/admin/registrations/{uuid.uuid4()}/capacity"
    )
    assert response.status_code == 404


# ---------------------------------------------------------------------------
# Alternates
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.integration
async def test_join_and_leave_alternates(registrations_client, db_session, auth):
    user = await _logged_in_user(db_session, auth)
    registration, _ = await seed_registration(
        db_session,
        allow_alternates=True,
        alternate_price=2000,
        alternate_accounting_code="4200",
    )

    response = await registrations_client.get(f"/registrations/{registration.id}")
    assert response.json()["allow_alternates"] is True
    assert response.json()["alternate_price"] == 2000

    response = await registrations_client.post(
        f"/registrations/{registration.id}/alternates", json={}
    )
    assert response.status_code == 201, response.text
    assert response.json()["user_id"] == str(user.id)

    response = await registrations_client.post(
        f"/registrations/{registration.id}/alternates", json={}
    )
    assert response.status_code == 400
    assert "already registered as an alternate" in response.json()["detail"]

    response = await registrations_client.delete(
        f"/registrations/{registration.id}/alternates"
    )
    assert response.status_code == 204
    response = await registrations_client.delete(
        f"/registrations/{registration.id}/alternates"
    )
    assert response.status_code == 404


@pytest.mark.asyncio
@pytest.mark.integration
async def test_alternates_need_payment_method_and_open_roster(
    registrations_client, db_session, auth
):
    closed, _ = await seed_registration(db_session)
    await _logged_in_user(db_session, auth)
    response = await registrations_client.post(
        f"/registrations/{closed.id}/alternates", json={}
    )
    assert response.status_code == 400
    assert response.json()["detail"] == "This registration does not allow alternates"

    await _logged_in_user(db_session, auth, stripe_payment_method_id=None)
    response = await registrations_client.post(
        f"/registrations/{closed.id}/alternates", json={}
    )
    assert response.status_code == 400
    assert "payment method" in response.json()["detail"]


@pytest.mark.asyncio
@pytest.mark.integration
async def test_admin_manages_alternate_games(registrations_client, db_session, auth):
    registration, _ = await seed_registration(
        db_session,
        allow_alternates=True,
        alternate_price=2000,
        alternate_accounting_code="4200",
    )
    user = await _logged_in_user(db_session, auth)
    await registrations_client.post(
        f"/registrations/{registration.id}/alternates", json={}
    )

    response = await registrations_client.post(
        f"/admin/registrations/{registration.id}/alternate-games",
        json={"game_description": "Week 3 vs Hawks"},
    )
    assert response.status_code == 403

    admin = auth.login_admin()
    response = await registrations_client.post(
        f"/admin/registrations/{registration.id}/alternate-games",
        json={"game_description": "Week 3 vs Hawks"},
    )
    assert response.status_code == 201, response.text
    game = response.json()
    assert game["created_by"] == str(admin.uuid)
    assert game["selected_count"] == 0

    response = await registrations_client.get(
        f"/admin/registrations/{registration.id}/alternate-games"
    )
    assert [g["id"] for g in response.json()] == [game["id"]]

    response = await registrations_client.get(
        f"/admin/registrations/{registration.id}/alternates"
    )
    assert [a["user_id"] for a in response.json()] == [str(user.id)]

    response = await registrations_client.post(
        f"/admin/registrations/{registration.id}/alternate-games",
        json={"game_description": ""},
    )
    assert response.status_code == 422


@pytest.mark.asyncio
@pytest.mark.integration
async def test_alternate_game_needs_pricing(registrations_client, db_session, auth):
    registration, _ = await seed_registration(db_session, allow_alternates=True)
    auth.login_admin()

    response = await registrations_client.post(
        f"/admin/registrations/{registration.id}/alternate-games",
        json={"game_description": "Week 3 vs Hawks"},
    )
    assert response.status_code == 400
    assert "alternate price" in response.json()["detail"]
