from fastapi.testclient import TestClient

from resumatch.api.app import create_app
from resumatch.core.workers import WorkerPool
from resumatch.db.models import QueueKind
from resumatch.db.queue import RetryQueue
from resumatch.db.session import SessionLocal


def test_queue_overview_and_listing(fake_client, settings) -> None:
    with SessionLocal() as db:
        queue = RetryQueue(db)
        queue.enqueue(QueueKind.ANALYSIS, 1)
        parked = queue.enqueue(QueueKind.MATCH, 4, related_id=1)
        queue.record_failure(parked.id, "upstream exploded", max_attempts=1)

    app = create_app(worker_pool=WorkerPool(SessionLocal, fake_client, settings))
    with TestClient(app) as client:
        assert client.get("/health").json() == {"status": "ok"}

        overview = client.get("/api/queues")
        assert overview.status_code == 200
        queues = {q["kind"]: q for q in overview.json()["queues"]}
        assert queues["analysis"]["counts"]["pending"] == 1
        assert queues["match"]["counts"]["dormant"] == 1
        assert queues["match"]["running"] is False

        listing = client.get("/api/queues/match")
        assert listing.status_code == 200
        rows = listing.json()
        assert rows[0]["status"] == "dormant"
        assert rows[0]["attempt_count"] == 1
        assert rows[0]["last_error"] == "upstream exploded"

        assert client.get("/api/queues/match", params={"status": "pending"}).json() == []
        assert client.get("/api/queues/match", params={"status": "lost"}).status_code == 400
        assert client.get("/api/queues/unknown").status_code == 404
