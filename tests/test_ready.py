from sqlalchemy.exc import OperationalError

from app.stocklink.db.session import get_db


def test_ready(client):
    response = client.get("/ready")
    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "ready"
    assert payload["schema_revision"] == "0001_initial"
    assert payload["trace_id"]


def test_ready_reports_db_unavailable(client):
    class _BrokenSession:
        def execute(self, *_args, **_kwargs):
            raise OperationalError("SELECT 1", {}, Exception("connection refused"))

    client.app.dependency_overrides[get_db] = lambda: _BrokenSession()
    try:
        response = client.get("/ready")
    finally:
        client.app.dependency_overrides.clear()

    assert response.status_code == 503
    assert response.json()["code"] == "DB_UNAVAILABLE"
