from datetime import datetime, timedelta, timezone

from conftest import OTHER_TENANT, TENANT


def _headers(tenant=TENANT):
    return {"X-Tenant-ID": tenant}


def _day(offset):
    return (datetime.now(timezone.utc).date() + timedelta(days=offset)).isoformat()


class TestOccurrences:
    def _create_series(self, client, **overrides):
        payload = {
            "title": "HVAC service",
            "customer_name": "Beta LLC",
            "rrule": "FREQ=WEEKLY;COUNT=4",
            "start_date": _day(7),
            "local_start_time": "09:00",
            "duration_minutes": 60,
            "timezone": "UTC",
            "estimated_cost": 120.0,
        }
        payload.update(overrides)
        r = client.post("/api/v1/series", json=payload, headers=_headers())
        return r.json()["id"]

    def _list(self, client, tenant=TENANT, **params):
        params = {"start": f"{_day(0)}T00:00:00Z", "end": f"{_day(60)}T00:00:00Z", **params}
        return client.get("/api/v1/occurrences", params=params, headers=_headers(tenant))

    def _first(self, client):
        return self._list(client).json()["occurrences"][0]

    def test_list_in_range(self, client):
        series_id = self._create_series(client)
        r = self._list(client)
        assert r.status_code == 200
        data = r.json()
        assert data["total"] == 4
        starts = [o["start_at"] for o in data["occurrences"]]
        assert starts == sorted(starts)
        assert starts[0] == f"{_day(7)}T09:00:00Z"
        assert {o["series_id"] for o in data["occurrences"]} == {series_id}
        assert data["occurrences"][0]["estimated_cost"] == 120.0

    def test_list_requires_range(self, client):
        r = client.get("/api/v1/occurrences", headers=_headers())
        assert r.status_code == 422

    def test_list_rejects_bad_instant(self, client):
        r = self._list(client, start="yesterday")
        assert r.status_code == 400

    def test_list_filters_status(self, client):
        self._create_series(client)
        occ = self._first(client)
        client.patch(f"/api/v1/occurrences/{occ['id']}", json={"status": "completed"}, headers=_headers())

        assert self._list(client, status="completed").json()["total"] == 1
        assert self._list(client, status="scheduled").json()["total"] == 3

    def test_list_is_tenant_scoped(self, client):
        self._create_series(client)
        assert self._list(client, tenant=OTHER_TENANT).json()["total"] == 0

    def test_complete_occurrence(self, client):
        self._create_series(client)
        occ = self._first(client)
        r = client.patch(f"/api/v1/occurrences/{occ['id']}", json={
            "status": "completed",
            "actual_cost": 135.5,
            "completion_notes": "Replaced filter",
        }, headers=_headers())
        assert r.status_code == 200
        data = r.json()
        assert data["status"] == "completed"
        assert data["actual_cost"] == 135.5
        assert data["completion_notes"] == "Replaced filter"

    def test_invalid_status(self, client):
        self._create_series(client)
        occ = self._first(client)
        r = client.patch(f"/api/v1/occurrences/{occ['id']}", json={"status": "done"}, headers=_headers())
        assert r.status_code == 400

    def test_overrides_win_over_template(self, client):
        self._create_series(client)
        occ = self._first(client)
        r = client.patch(f"/api/v1/occurrences/{occ['id']}", json={
            "override_title": "HVAC service + duct check",
            "override_estimated_cost": 180.0,
        }, headers=_headers())
        data = r.json()
        assert data["title"] == "HVAC service + duct check"
        assert data["estimated_cost"] == 180.0

    def test_manual_reschedule(self, client):
        self._create_series(client)
        occ = self._first(client)
        r = client.patch(f"/api/v1/occurrences/{occ['id']}", json={
            "start_at": f"{_day(8)}T13:00:00Z",
            "end_at": f"{_day(8)}T14:30:00Z",
        }, headers=_headers())
        assert r.status_code == 200
        assert r.json()["start_at"] == f"{_day(8)}T13:00:00Z"
        assert r.json()["end_at"] == f"{_day(8)}T14:30:00Z"

    def test_manual_reschedule_needs_both_ends(self, client):
        self._create_series(client)
        occ = self._first(client)
        r = client.patch(f"/api/v1/occurrences/{occ['id']}", json={
            "start_at": f"{_day(8)}T13:00:00Z",
        }, headers=_headers())
        assert r.status_code == 400

    def test_manual_reschedule_end_before_start(self, client):
        self._create_series(client)
        occ = self._first(client)
        r = client.patch(f"/api/v1/occurrences/{occ['id']}", json={
            "start_at": f"{_day(8)}T13:00:00Z",
            "end_at": f"{_day(8)}T12:00:00Z",
        }, headers=_headers())
        assert r.status_code == 400

    def test_manual_reschedule_onto_sibling(self, client):
        self._create_series(client)
        first, second = self._list(client).json()["occurrences"][:2]
        r = client.patch(f"/api/v1/occurrences/{first['id']}", json={
            "start_at": second["start_at"],
            "end_at": second["end_at"],
        }, headers=_headers())
        assert r.status_code == 409

    def test_get_and_delete(self, client):
        self._create_series(client)
        occ = self._first(client)
        assert client.get(f"/api/v1/occurrences/{occ['id']}", headers=_headers()).status_code == 200

        r = client.delete(f"/api/v1/occurrences/{occ['id']}", headers=_headers())
        assert r.status_code == 200
        assert client.get(f"/api/v1/occurrences/{occ['id']}", headers=_headers()).status_code == 404
        assert self._list(client).json()["total"] == 3

    def test_other_tenant_cannot_touch(self, client):
        self._create_series(client)
        occ = self._first(client)
        h = _headers(OTHER_TENANT)
        assert client.get(f"/api/v1/occurrences/{occ['id']}", headers=h).status_code == 404
        assert client.patch(f"/api/v1/occurrences/{occ['id']}", json={"status": "cancelled"},
                            headers=h).status_code == 404
        assert client.delete(f"/api/v1/occurrences/{occ['id']}", headers=h).status_code == 404
