from datetime import datetime, timezone

from routes.analytics import growth, make_window, month_keys
from conftest import signup, login_headers


def today():
    return datetime.now(timezone.utc).date().isoformat()


def create_qr(client, headers, profile_id, **fields):
    r = client.post("/api/qr-codes", json={"profileId": profile_id, **fields}, headers=headers)
    assert r.status_code == 201, r.text
    return r.json()


def scan(client, code, ip=None, times=1):
    headers = {"X-Forwarded-For": ip} if ip else {}
    for _ in range(times):
        r = client.get(f"/qr/{code}", headers=headers, follow_redirects=False)
        assert r.status_code == 302


def test_growth():
    assert growth(5, 0) == 100
    assert growth(0, 0) == 0
    assert growth(3, 2) == 50
    assert growth(1, 4) == -75


def test_windows():
    now = datetime(2024, 1, 15, 9, 30, tzinfo=timezone.utc)
    assert month_keys(now)[0] == "2023-02"
    assert month_keys(now)[-1] == "2024-01"

    week = make_window("week", now)
    assert week.keys == [f"2024-01-{day:02d}" for day in range(9, 16)]
    assert week.start == datetime(2024, 1, 9, tzinfo=timezone.utc)
    assert week.previous_start == datetime(2024, 1, 2, tzinfo=timezone.utc)

    year = make_window("year", now)
    assert year.monthly
    assert year.start == datetime(2023, 2, 1, tzinfo=timezone.utc)
    assert year.previous_start == datetime(2022, 2, 1, tzinfo=timezone.utc)


def test_profile_analytics(client, user_headers, settings):
    settings.TRUST_FORWARDED_FOR = True
    profile = client.get("/api/profiles", headers=user_headers).json()[0]
    qr = create_qr(client, user_headers, profile["id"])

    scan(client, qr["code"], ip="203.0.113.1", times=2)
    scan(client, qr["code"], ip="198.51.100.2")
    # Profile page views are not QR scans
    client.get(f"/api/profile/{profile['username']}")

    r = client.get(f"/api/analytics/profile/{profile['id']}", headers=user_headers)
    assert r.status_code == 200
    data = r.json()
    assert data["total_scans"] == 3
    assert data["unique_scans"] == 2
    assert data["last_scanned_at"] is not None
    assert len(data["scans_by_date"]) == 30
    assert data["scans_by_date"][-1] == {"date": today(), "count": 3}
    assert sum(day["count"] for day in data["scans_by_date"]) == 3

    signup(client, "nosy@example.com")
    nosy = login_headers(client, "nosy@example.com")
    assert client.get(f"/api/analytics/profile/{profile['id']}", headers=nosy).status_code == 404


def test_profile_analytics_without_scans(client, user_headers):
    profile = client.get("/api/profiles", headers=user_headers).json()[0]
    data = client.get(f"/api/analytics/profile/{profile['id']}", headers=user_headers).json()
    assert data["total_scans"] == 0
    assert data["unique_scans"] == 0
    assert data["last_scanned_at"] is None
    assert all(day["count"] == 0 for day in data["scans_by_date"])


def test_dashboard_stats(client, user_headers):
    profile = client.get("/api/profiles", headers=user_headers).json()[0]
    flyer = create_qr(client, user_headers, profile["id"], name="Flyer")
    badge = create_qr(client, user_headers, profile["id"], name="Badge")
    scan(client, flyer["code"], times=3)
    scan(client, badge["code"])

    r = client.get("/api/analytics/dashboard-stats?range=week", headers=user_headers)
    assert r.status_code == 200
    data = r.json()
    assert data["range"] == "week"
    assert data["total_scans"] == 4
    assert data["scans_in_period"] == 4
    assert data["scans_previous_period"] == 0
    assert data["scan_growth"] == 100
    assert data["active_qr_codes"] == 2
    assert data["avg_scans_per_qr"] == 2
    # Scans do not count as edits
    assert data["links_updated"] == 0
    assert len(data["scans_timeline"]) == 7
    assert data["scans_timeline"][-1] == {"date": today(), "count": 4}
    assert data["created_timeline"][-1]["count"] == 2
    assert [(q["name"], q["scans"], q["rank"]) for q in data["top_qr_codes"]] == [("Flyer", 3, 1), ("Badge", 1, 2)]
    assert data["devices"] == [{"label": "Desktop", "count": 4}]
    assert data["top_locations"] == [{"country": "Unknown", "city": "Unknown", "count": 4}]

    client.put(f"/api/qr-codes/{badge['id']}", json={"name": "Conference badge"}, headers=user_headers)
    client.delete(f"/api/qr-codes/{flyer['id']}", headers=user_headers)

    data = client.get("/api/analytics/dashboard-stats?range=year", headers=user_headers).json()
    assert data["active_qr_codes"] == 1
    assert data["links_updated"] == 2
    assert data["avg_scans_per_qr"] == 4
    assert len(data["scans_timeline"]) == 12
    assert data["scans_timeline"][-1] == {"date": today()[:7], "count": 4}

    assert client.get("/api/analytics/dashboard-stats?range=decade", headers=user_headers).status_code == 400


def test_dashboard_stats_only_counts_own_codes(client, user_headers):
    signup(client, "rival@example.com")
    rival = login_headers(client, "rival@example.com")
    rival_profile = client.get("/api/profiles", headers=rival).json()[0]
    scan(client, create_qr(client, rival, rival_profile["id"])["code"], times=2)

    data = client.get("/api/analytics/dashboard-stats", headers=user_headers).json()
    assert data["range"] == "month"
    assert data["total_scans"] == 0
    assert data["active_qr_codes"] == 0
    assert data["scan_growth"] == 0
    assert data["top_qr_codes"] == []
    assert len(data["scans_timeline"]) == 30


def test_top_profiles(client, admin_headers):
    # Admins are not bound by the one-profile plan limit
    busy = client.post("/api/profiles", json={"full_name": "Busy Card", "job_title": "Sales"}, headers=admin_headers).json()
    quiet = client.post("/api/profiles", json={"full_name": "Quiet Card"}, headers=admin_headers).json()
    scan(client, create_qr(client, admin_headers, busy["id"])["code"], times=2)
    scan(client, create_qr(client, admin_headers, quiet["id"])["code"])

    r = client.get("/api/analytics/top-profiles", headers=admin_headers)
    assert r.status_code == 200
    data = r.json()
    ranking = [(p["full_name"], p["total_scans"]) for p in data["top_profiles"]]
    assert ranking == [("Busy Card", 2), ("Quiet Card", 1), ("Site Admin", 0)]
    assert data["top_profiles"][0]["job_title"] == "Sales"
    assert data["stats"] == {"total_scans": 3, "active_count": 3}
    assert len(data["scans_by_date"]) == 30
    assert data["scans_by_date"][-1]["count"] == 3

    client.delete(f"/api/profiles/{quiet['id']}", headers=admin_headers)
    data = client.get("/api/analytics/top-profiles?range=week", headers=admin_headers).json()
    assert data["stats"] == {"total_scans": 2, "active_count": 2}
    assert len(data["scans_by_date"]) == 7
    assert data["scans_by_date"][-1]["count"] == 2
