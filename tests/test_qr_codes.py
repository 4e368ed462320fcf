from conftest import signup, login_headers


def first_profile(client, headers):
    return client.get("/api/profiles", headers=headers).json()[0]


def test_create_list_update(client, user_headers):
    profile = first_profile(client, user_headers)
    r = client.post(
        "/api/qr-codes",
        json={"profileId": profile["id"], "name": "Flyer", "color": "#112233"},
        headers=user_headers,
    )
    assert r.status_code == 201
    qr = r.json()
    assert qr["name"] == "Flyer"
    assert qr["color"] == "#112233"

    listed = client.get("/api/qr-codes", headers=user_headers).json()
    assert [q["id"] for q in listed] == [qr["id"]]
    by_profile = client.get(f"/api/qr-codes?profileId={profile['id']}", headers=user_headers).json()
    assert len(by_profile) == 1

    r = client.put(f"/api/qr-codes/{qr['id']}", json={"name": "Poster"}, headers=user_headers)
    assert r.status_code == 200
    assert r.json()["name"] == "Poster"
    assert r.json()["code"] == qr["code"]


def test_invalid_color_rejected(client, user_headers):
    profile = first_profile(client, user_headers)
    r = client.post("/api/qr-codes", json={"profileId": profile["id"], "color": "red"}, headers=user_headers)
    assert r.status_code == 400


def test_cannot_bind_to_someone_elses_profile(client, user_headers):
    signup(client, "eve@example.com")
    eve = login_headers(client, "eve@example.com")
    eve_profile = first_profile(client, eve)

    r = client.post("/api/qr-codes", json={"profileId": eve_profile["id"]}, headers=user_headers)
    assert r.status_code == 404


def test_soft_delete_restore_and_permanent_delete(client, user_headers):
    profile = first_profile(client, user_headers)
    qr = client.post("/api/qr-codes", json={"profileId": profile["id"]}, headers=user_headers).json()

    assert client.delete(f"/api/qr-codes/{qr['id']}", headers=user_headers).status_code == 200
    assert client.get("/api/qr-codes", headers=user_headers).json() == []
    trash = client.get("/api/qr-codes?deletedOnly=true", headers=user_headers).json()
    assert [q["id"] for q in trash] == [qr["id"]]
    assert len(client.get("/api/qr-codes?includeDeleted=true", headers=user_headers).json()) == 1

    r = client.post("/api/qr-codes/restore", json={"id": qr["id"]}, headers=user_headers)
    assert r.status_code == 200
    assert r.json()["deleted_at"] is None
    # Idempotent
    assert client.post("/api/qr-codes/restore", json={"id": qr["id"]}, headers=user_headers).status_code == 200

    r = client.delete(f"/api/qr-codes/{qr['id']}?permanent=true", headers=user_headers)
    assert r.status_code == 200
    assert client.get(f"/api/qr-codes/{qr['id']}", headers=user_headers).status_code == 404


def test_restore_unknown_code_is_not_found(client, user_headers):
    r = client.post("/api/qr-codes/restore", json={"id": 9999}, headers=user_headers)
    assert r.status_code == 404
    assert r.json()["error"] == "NotFound"


def test_plan_limit(client, admin_headers):
    r = client.post(
        "/api/admin/users",
        json={"email": "limited@example.com", "password": "password123", "limits": {"max_qr_codes": 1}},
        headers=admin_headers,
    )
    assert r.status_code == 201
    headers = login_headers(client, "limited@example.com")
    profile = first_profile(client, headers)

    assert client.post("/api/qr-codes", json={"profileId": profile["id"]}, headers=headers).status_code == 201
    r = client.post("/api/qr-codes", json={"profileId": profile["id"]}, headers=headers)
    assert r.status_code == 403

    # A second profile is over the default plan too
    r = client.post("/api/profiles", json={"full_name": "Second"}, headers=headers)
    assert r.status_code == 403


def test_image(client, user_headers):
    profile = first_profile(client, user_headers)
    qr = client.post("/api/qr-codes", json={"profileId": profile["id"]}, headers=user_headers).json()

    r = client.get(f"/api/qr-codes/{qr['id']}/image", headers=user_headers)
    assert r.status_code == 200
    assert r.headers["content-type"] == "image/png"
    assert r.content.startswith(b"\x89PNG")

    r = client.get(f"/api/qr-codes/{qr['id']}/image?download=true", headers=user_headers)
    assert "attachment" in r.headers["content-disposition"]


def test_analytics(client, user_headers):
    profile = first_profile(client, user_headers)
    qr = client.post("/api/qr-codes", json={"profileId": profile["id"]}, headers=user_headers).json()

    iphone = "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 Version/17.0 Mobile/15E148 Safari/604.1"
    client.get(f"/qr/{qr['code']}", headers={"User-Agent": iphone}, follow_redirects=False)
    client.get(f"/qr/{qr['code']}", headers={"User-Agent": iphone}, follow_redirects=False)

    r = client.get(f"/api/qr-codes/{qr['id']}/analytics?time_range=all", headers=user_headers)
    assert r.status_code == 200
    data = r.json()
    assert data["scans"] == 2
    assert data["total_events"] == 2
    assert data["scans_today"] == 2
    assert data["devices"] == [{"label": "Mobile", "count": 2}]
    assert data["operating_systems"] == [{"label": "iOS", "count": 2}]
    assert len(data["hourly_breakdown"]) == 24
    assert sum(h["count"] for h in data["hourly_breakdown"]) == 2
    assert len(data["recent_scans"]) == 2

    r = client.get(f"/api/qr-codes/{qr['id']}/analytics?time_range=forever", headers=user_headers)
    assert r.status_code == 400
