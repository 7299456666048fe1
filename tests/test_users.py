def test_user_can_view_own_profile_only(client, register):
    headers, user = register()
    other_headers, other = register()
    res = client.get(f"/api/users/{user['id']}", headers=headers)
    assert res.status_code == 200
    body = res.json()
    assert body["user"]["email"] == user["email"]
    assert body["shop"] is None
    assert body["stats"]["total_orders"] == 0
    assert client.get(f"/api/users/{user['id']}", headers=other_headers).status_code == 403


def test_unknown_and_malformed_user_ids(client, register):
    headers, _ = register()
    assert client.get("/api/users/not-an-id", headers=headers).status_code == 404
    assert client.get("/api/users/64b7f0f0f0f0f0f0f0f0f0f0", headers=headers).status_code == 404


def test_update_ignores_privileged_fields_for_non_admin(client, register):
    headers, user = register()
    res = client.put(f"/api/users/{user['id']}", json={"first_name": "Laila", "role": "admin"}, headers=headers)
    assert res.status_code == 200
    assert res.json()["first_name"] == "Laila"
    assert res.json()["role"] == "customer"


def test_admin_can_change_role(client, register, make_admin):
    admin_headers, _ = make_admin()
    _, user = register()
    res = client.put(f"/api/users/{user['id']}", json={"role": "seller", "is_verified": True}, headers=admin_headers)
    assert res.status_code == 200
    assert res.json()["role"] == "seller"
    assert res.json()["is_verified"] is True


def test_delete_is_soft(client, mongo, register):
    headers, user = register(email="bye@example.com")
    assert client.delete(f"/api/users/{user['id']}", headers=headers).status_code == 200
    assert mongo["user"].count_documents({"email": "bye@example.com", "is_active": False}) == 1
    assert client.get("/api/auth/me", headers=headers).status_code == 401


def test_change_password(client, register):
    headers, user = register(email="pw@example.com", password="oldpass1")
    bad = client.put(f"/api/users/{user['id']}/password",
                     json={"current_password": "wrong", "new_password": "newpass1"}, headers=headers)
    assert bad.status_code == 400
    ok = client.put(f"/api/users/{user['id']}/password",
                    json={"current_password": "oldpass1", "new_password": "newpass1"}, headers=headers)
    assert ok.status_code == 200
    res = client.post("/api/auth/login", json={"email": "pw@example.com", "password": "newpass1"})
    assert res.status_code == 200


def test_change_password_only_for_self(client, register, make_admin):
    admin_headers, _ = make_admin()
    _, user = register()
    res = client.put(f"/api/users/{user['id']}/password",
                     json={"current_password": "secret123", "new_password": "newpass1"}, headers=admin_headers)
    assert res.status_code == 403


def test_toggle_status_is_admin_only(client, register, make_admin):
    headers, user = register()
    assert client.put(f"/api/users/{user['id']}/toggle-status", headers=headers).status_code == 403
    admin_headers, _ = make_admin()
    res = client.put(f"/api/users/{user['id']}/toggle-status", headers=admin_headers)
    assert res.status_code == 200
    assert res.json()["user"]["is_active"] is False
    res = client.put(f"/api/users/{user['id']}/toggle-status", headers=admin_headers)
    assert res.json()["user"]["is_active"] is True
