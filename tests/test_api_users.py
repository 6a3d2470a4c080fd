"""
Integration tests for authentication and user endpoints.
Covers signup/login, the protect guard, password change and reset flows,
self-service profile endpoints and admin user management.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest

from tour_service.mailer import MailDeliveryError
from tour_service.models import Role


async def signup(client, api, payload):
    response = await client.post(api("/users/signup"), json=payload)
    assert response.status_code == 201, response.text
    return response.json()


async def request_reset(client, api, email):
    """Trigger forgotPassword and return the path of the e-mailed reset URL."""
    with patch("tour_service.mailer.send_password_reset", new_callable=AsyncMock) as mock_send:
        response = await client.post(api("/users/forgotPassword"), json={"email": email})
    assert response.status_code == 200, response.text
    reset_url = mock_send.await_args.args[1]
    return reset_url.replace("http://test", "")


# ============================================================================
# POST /users/signup
# ============================================================================

@pytest.mark.asyncio
async def test_signup_issues_token_and_cookie(client, api, sample_user):
    response = await client.post(api("/users/signup"), json=sample_user)

    assert response.status_code == 201
    body = response.json()
    assert body["status"] == "success"
    assert body["token"]
    user = body["data"]["user"]
    assert user["email"] == sample_user["email"]
    assert user["role"] == "user"
    assert "password" not in user
    assert "active" not in user

    set_cookie = response.headers["set-cookie"]
    assert set_cookie.startswith(f"jwt={body['token']}")
    assert "HttpOnly" in set_cookie
    assert "Secure" not in set_cookie  # Only in production


@pytest.mark.asyncio
async def test_signup_normalizes_email(client, api, sample_user):
    body = await signup(client, api, {**sample_user, "email": "  Mixed.Case@Example.COM "})
    assert body["data"]["user"]["email"] == "mixed.case@example.com"


@pytest.mark.asyncio
async def test_signup_cannot_choose_role(client, api, sample_user):
    body = await signup(client, api, {**sample_user, "role": "admin"})
    assert body["data"]["user"]["role"] == "user"


@pytest.mark.asyncio
async def test_signup_password_mismatch(client, api, sample_user):
    response = await client.post(api("/users/signup"), json={**sample_user, "confirmPassword": "different123"})

    assert response.status_code == 400
    body = response.json()
    assert body["status"] == "fail"
    assert "Passwords are not the same" in body["message"]


@pytest.mark.asyncio
async def test_signup_duplicate_email(client, api, sample_user):
    await signup(client, api, sample_user)
    response = await client.post(api("/users/signup"), json=sample_user)

    assert response.status_code == 400
    body = response.json()
    assert body["status"] == "fail"
    assert body["message"].startswith("Duplicate field value")
    assert body["error"] == "CONFLICT"


@pytest.mark.asyncio
async def test_signup_missing_fields(client, api):
    response = await client.post(api("/users/signup"), json={"email": "test@example.com"})
    assert response.status_code == 400
    assert response.json()["message"].startswith("Invalid input data.")


# ============================================================================
# POST /users/login
# ============================================================================

@pytest.mark.asyncio
async def test_login_success(client, api, sample_user):
    await signup(client, api, sample_user)
    response = await client.post(api("/users/login"), json={
        "email": sample_user["email"],
        "password": sample_user["password"],
    })

    assert response.status_code == 200
    body = response.json()
    assert body["token"]
    assert "password" not in body["data"]["user"]


@pytest.mark.asyncio
async def test_login_errors_do_not_leak_account_existence(client, api, sample_user):
    await signup(client, api, sample_user)

    wrong_password = await client.post(api("/users/login"), json={
        "email": sample_user["email"], "password": "not-the-password",
    })
    unknown_email = await client.post(api("/users/login"), json={
        "email": "nobody@example.com", "password": sample_user["password"],
    })

    assert wrong_password.status_code == unknown_email.status_code == 401
    assert wrong_password.json()["message"] == unknown_email.json()["message"] == "Incorrect email or password"


@pytest.mark.asyncio
async def test_login_requires_email_and_password(client, api):
    response = await client.post(api("/users/login"), json={"email": "test@example.com"})
    assert response.status_code == 400
    assert response.json()["message"] == "Please provide email and password!"


# ============================================================================
# Protect
# ============================================================================

@pytest.mark.asyncio
async def test_me_requires_token(client, api):
    response = await client.get(api("/users/me"))

    assert response.status_code == 401
    assert response.headers["WWW-Authenticate"] == "Bearer"
    assert response.json()["message"] == "You are not logged in! Please log in to get access."


@pytest.mark.asyncio
async def test_me_with_invalid_token(client, api):
    response = await client.get(api("/users/me"), headers={"Authorization": "Bearer garbage"})
    assert response.status_code == 401
    assert response.json()["error"] == "INVALID_TOKEN"


@pytest.mark.asyncio
async def test_me_requires_bearer_scheme(client, api, sample_user):
    token = (await signup(client, api, sample_user))["token"]
    response = await client.get(api("/users/me"), headers={"Authorization": f"Token {token}"})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_me_returns_current_user(client, api, sample_user):
    token = (await signup(client, api, sample_user))["token"]
    response = await client.get(api("/users/me"), headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 200
    user = response.json()["data"]["user"]
    assert user["email"] == sample_user["email"]
    assert "password" not in user


# ============================================================================
# PATCH /users/updateMyPassword
# ============================================================================

@pytest.mark.asyncio
async def test_old_token_rejected_after_password_change(client, api, sample_user):
    old_token = (await signup(client, api, sample_user))["token"]
    await asyncio.sleep(0.01)

    response = await client.patch(
        api("/users/updateMyPassword"),
        json={"password": "password123", "newPassword": "newpassword456", "confirmPassword": "newpassword456"},
        headers={"Authorization": f"Bearer {old_token}"},
    )
    assert response.status_code == 200
    new_token = response.json()["token"]

    stale = await client.get(api("/users/me"), headers={"Authorization": f"Bearer {old_token}"})
    assert stale.status_code == 401
    assert stale.json()["error"] == "STALE_PASSWORD"
    assert stale.json()["message"] == "User recently changed password! Please log in again."

    fresh = await client.get(api("/users/me"), headers={"Authorization": f"Bearer {new_token}"})
    assert fresh.status_code == 200

    login = await client.post(api("/users/login"), json={"email": sample_user["email"], "password": "newpassword456"})
    assert login.status_code == 200


@pytest.mark.asyncio
async def test_update_password_wrong_current(client, api, sample_user):
    token = (await signup(client, api, sample_user))["token"]
    response = await client.patch(
        api("/users/updateMyPassword"),
        json={"password": "wrong-password", "newPassword": "newpassword456", "confirmPassword": "newpassword456"},
        headers={"Authorization": f"Bearer {token}"},
    )

    assert response.status_code == 401
    assert response.json()["message"] == "Your current password is wrong."


# ============================================================================
# Password reset
# ============================================================================

@pytest.mark.asyncio
async def test_password_reset_flow(client, api, sample_user):
    await signup(client, api, sample_user)
    reset_path = await request_reset(client, api, sample_user["email"])
    assert reset_path.startswith(api("/users/resetPassword/"))

    response = await client.patch(reset_path, json={"password": "resetpass789", "confirmPassword": "resetpass789"})
    assert response.status_code == 200
    body = response.json()
    assert body["token"]

    me = await client.get(api("/users/me"), headers={"Authorization": f"Bearer {body['token']}"})
    assert me.status_code == 200

    login = await client.post(api("/users/login"), json={"email": sample_user["email"], "password": "resetpass789"})
    assert login.status_code == 200


@pytest.mark.asyncio
async def test_reset_token_is_single_use(client, api, sample_user):
    await signup(client, api, sample_user)
    reset_path = await request_reset(client, api, sample_user["email"])
    payload = {"password": "resetpass789", "confirmPassword": "resetpass789"}

    assert (await client.patch(reset_path, json=payload)).status_code == 200
    second = await client.patch(reset_path, json=payload)
    assert second.status_code == 400
    assert second.json()["message"] == "Token is invalid or has expired"


@pytest.mark.asyncio
async def test_second_reset_request_invalidates_first(client, api, sample_user):
    await signup(client, api, sample_user)
    first_path = await request_reset(client, api, sample_user["email"])
    second_path = await request_reset(client, api, sample_user["email"])
    payload = {"password": "resetpass789", "confirmPassword": "resetpass789"}

    first = await client.patch(first_path, json=payload)
    assert first.status_code == 400
    assert first.json()["error"] == "INVALID_OR_EXPIRED_TOKEN"

    assert (await client.patch(second_path, json=payload)).status_code == 200


@pytest.mark.asyncio
async def test_expired_reset_token_rejected(client, api, sample_user, test_db):
    await signup(client, api, sample_user)
    reset_path = await request_reset(client, api, sample_user["email"])

    await test_db["users"].update_one(
        {"email": sample_user["email"]},
        {"$set": {"passwordResetExpires": datetime.now(timezone.utc) - timedelta(minutes=11)}},
    )

    response = await client.patch(reset_path, json={"password": "resetpass789", "confirmPassword": "resetpass789"})
    assert response.status_code == 400
    assert response.json()["message"] == "Token is invalid or has expired"


@pytest.mark.asyncio
async def test_reset_stores_only_token_hash(client, api, sample_user, test_db):
    await signup(client, api, sample_user)
    reset_path = await request_reset(client, api, sample_user["email"])
    raw_token = reset_path.rsplit("/", 1)[-1]

    stored = await test_db["users"].find_one({"email": sample_user["email"]})
    assert stored["passwordResetToken"] != raw_token
    assert len(stored["passwordResetToken"]) == 64
    assert stored["passwordResetExpires"] is not None


@pytest.mark.asyncio
async def test_forgot_password_unknown_email(client, api):
    response = await client.post(api("/users/forgotPassword"), json={"email": "nobody@example.com"})
    assert response.status_code == 404
    assert response.json()["message"] == "There is no user with that email address."


@pytest.mark.asyncio
async def test_forgot_password_mail_failure_rolls_back(client, api, sample_user, test_db):
    await signup(client, api, sample_user)

    with patch("tour_service.mailer.send_password_reset", new_callable=AsyncMock,
               side_effect=MailDeliveryError("connection refused")):
        response = await client.post(api("/users/forgotPassword"), json={"email": sample_user["email"]})

    assert response.status_code == 500
    body = response.json()
    assert body["status"] == "error"
    assert body["message"] == "There was an error sending the email. Try again later!"

    stored = await test_db["users"].find_one({"email": sample_user["email"]})
    assert "passwordResetToken" not in stored
    assert "passwordResetExpires" not in stored


# ============================================================================
# Self-service profile
# ============================================================================

@pytest.mark.asyncio
async def test_update_me_changes_allowed_fields_only(client, api, sample_user):
    token = (await signup(client, api, sample_user))["token"]
    response = await client.patch(
        api("/users/updateMe"),
        json={"name": "Renamed User", "email": "RENAMED@example.com", "role": "admin"},
        headers={"Authorization": f"Bearer {token}"},
    )

    assert response.status_code == 200
    user = response.json()["data"]["user"]
    assert user["name"] == "Renamed User"
    assert user["email"] == "renamed@example.com"
    assert user["role"] == "user"


@pytest.mark.asyncio
async def test_update_me_rejects_password_fields(client, api, sample_user):
    token = (await signup(client, api, sample_user))["token"]
    response = await client.patch(
        api("/users/updateMe"),
        json={"password": "sneaky123", "confirmPassword": "sneaky123"},
        headers={"Authorization": f"Bearer {token}"},
    )

    assert response.status_code == 400
    assert response.json()["message"].startswith("This route is not for password updates.")


@pytest.mark.asyncio
async def test_delete_me_deactivates_account(client, api, sample_user, test_db):
    token = (await signup(client, api, sample_user))["token"]
    headers = {"Authorization": f"Bearer {token}"}

    response = await client.delete(api("/users/deleteMe"), headers=headers)
    assert response.status_code == 204

    stored = await test_db["users"].find_one({"email": sample_user["email"]})
    assert stored["active"] is False

    login = await client.post(api("/users/login"), json={
        "email": sample_user["email"], "password": sample_user["password"],
    })
    assert login.status_code == 401

    me = await client.get(api("/users/me"), headers=headers)
    assert me.status_code == 401
    assert me.json()["error"] == "USER_GONE"


# ============================================================================
# Admin user management
# ============================================================================

@pytest.mark.asyncio
async def test_list_users_requires_admin(client, api, user_headers):
    response = await client.get(api("/users"), headers=user_headers)
    assert response.status_code == 403
    assert response.json()["message"] == "You do not have permission to perform this action"


@pytest.mark.asyncio
async def test_list_users_as_admin(client, api, admin_headers, make_user):
    await make_user(name="Alice", email="alice@example.com")
    await make_user(name="Bob", email="bob@example.com", role=Role.GUIDE)

    response = await client.get(api("/users"), params={"role": "guide"}, headers=admin_headers)

    assert response.status_code == 200
    body = response.json()
    assert body["results"] == 1
    assert body["data"]["users"][0]["email"] == "bob@example.com"
    assert "password" not in body["data"]["users"][0]


@pytest.mark.asyncio
async def test_list_users_hides_inactive(client, api, admin_headers, make_user, test_db):
    ghost = await make_user(email="ghost@example.com")
    await test_db["users"].update_one({"_id": ghost["_id"]}, {"$set": {"active": False}})

    response = await client.get(api("/users"), headers=admin_headers)
    emails = [user["email"] for user in response.json()["data"]["users"]]
    assert "ghost@example.com" not in emails


@pytest.mark.asyncio
async def test_admin_user_crud(client, api, admin_headers):
    created = await client.post(api("/users"), headers=admin_headers, json={
        "name": "Guide Person",
        "email": "guide@example.com",
        "password": "password123",
        "confirmPassword": "password123",
        "role": "guide",
    })
    assert created.status_code == 201
    user_id = created.json()["data"]["user"]["id"]
    assert created.json()["data"]["user"]["role"] == "guide"

    fetched = await client.get(api(f"/users/{user_id}"), headers=admin_headers)
    assert fetched.status_code == 200
    assert fetched.json()["data"]["user"]["name"] == "Guide Person"

    updated = await client.patch(api(f"/users/{user_id}"), headers=admin_headers, json={"role": "lead-guide"})
    assert updated.status_code == 200
    assert updated.json()["data"]["user"]["role"] == "lead-guide"

    deleted = await client.delete(api(f"/users/{user_id}"), headers=admin_headers)
    assert deleted.status_code == 204

    missing = await client.get(api(f"/users/{user_id}"), headers=admin_headers)
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_admin_get_user_invalid_id(client, api, admin_headers):
    response = await client.get(api("/users/not-an-id"), headers=admin_headers)
    assert response.status_code == 400
    assert response.json()["message"] == "Invalid _id: not-an-id."
