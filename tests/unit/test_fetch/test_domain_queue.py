"""Unit tests for per-origin queues and completion handles."""

import pytest

from resilient_fetch.fetch.domain_queue import (
    DomainQueue,
    PendingRequest,
    new_domain_queue,
)
from resilient_fetch.fetch.errors import ClientDestroyedError
from resilient_fetch.fetch.models import FetchResponse
from tests.helpers.time import FakeClock


ORIGIN = "https://example.com"


def _request(request_id: str, enqueued_at_ms: float = 0.0) -> PendingRequest:
    return PendingRequest(
        id=request_id,
        url=f"{ORIGIN}/{request_id}",
        origin=ORIGIN,
        method="GET",
        headers={},
        timeout_ms=1000,
        enqueued_at_ms=enqueued_at_ms,
    )


@pytest.fixture
def queue() -> DomainQueue:
    return new_domain_queue(
        ORIGIN, failure_threshold=3, cooldown_duration_ms=1000, clock=FakeClock()
    )


class TestOrdering:
    """Tests for FIFO order and the retry slot."""

    def test_fifo(self, queue: DomainQueue) -> None:
        for request_id in ("a", "b", "c"):
            queue.enqueue(_request(request_id))

        popped = [queue.pop_next().id for _ in range(3)]  # type: ignore[union-attr]

        assert popped == ["a", "b", "c"]
        assert queue.pop_next() is None

    def test_ready_retry_jumps_the_line(self, queue: DomainQueue) -> None:
        """Test a ready retry is served before queued requests."""
        queue.enqueue(_request("new"))
        queue.schedule_retry(_request("retry"), ready_at_ms=100)

        queue.promote_ready_retry(now_ms=50)
        assert queue.pop_next().id == "new"  # type: ignore[union-attr]

        queue.enqueue(_request("newer"))
        queue.promote_ready_retry(now_ms=100)
        assert queue.pop_next().id == "retry"  # type: ignore[union-attr]
        assert queue.pop_next().id == "newer"  # type: ignore[union-attr]

    def test_one_retry_slot_at_a_time(self, queue: DomainQueue) -> None:
        """Test only the earliest ready retry is promoted."""
        queue.schedule_retry(_request("late"), ready_at_ms=20)
        queue.schedule_retry(_request("early"), ready_at_ms=10)

        queue.promote_ready_retry(now_ms=30)

        assert queue.retry_slot is not None
        assert queue.retry_slot.id == "early"
        assert [r.id for r in queue.delayed] == ["late"]
        assert queue.next_ready_at_ms() == 20
        assert queue.queued_count == 2


class TestPacing:
    """Tests for minimum spacing between dispatches."""

    def test_first_dispatch_is_paced(self, queue: DomainQueue) -> None:
        assert queue.paced(now_ms=0, min_interval_ms=1500) is True

    def test_spacing(self, queue: DomainQueue) -> None:
        request = _request("a")
        queue.mark_dispatched(request, now_ms=1000)

        assert queue.in_flight_count == 1
        assert queue.paced(now_ms=2499, min_interval_ms=1500) is False
        assert queue.paced(now_ms=2500, min_interval_ms=1500) is True


class TestDraining:
    """Tests for shutdown and breaker draining."""

    def test_drain_waiting_keeps_in_flight(self, queue: DomainQueue) -> None:
        running = _request("running")
        queue.mark_dispatched(running, now_ms=0)
        queue.enqueue(_request("queued"))
        queue.schedule_retry(_request("delayed"), ready_at_ms=999)

        drained = queue.drain_waiting()

        assert {r.id for r in drained} == {"queued", "delayed"}
        assert queue.in_flight_count == 1
        assert queue.queued_count == 0

    def test_drain_all(self, queue: DomainQueue) -> None:
        running = _request("running")
        queue.mark_dispatched(running, now_ms=0)
        queue.enqueue(_request("queued"))

        drained = queue.drain_all()

        assert {r.id for r in drained} == {"running", "queued"}
        assert queue.mark_finished(running) is False


class TestCompletionHandle:
    """Tests for the settle-once completion handle."""

    def test_resolve_once(self) -> None:
        request = _request("a")
        response = FetchResponse(status_code=200, url=request.url, final_url=request.url)

        assert request.resolve(response) is True
        assert request.reject(ClientDestroyedError(request.url)) is False
        assert request.future.result() is response

    def test_reject_once(self) -> None:
        request = _request("a")
        error = ClientDestroyedError(request.url)

        assert request.reject(error) is True
        assert request.reject(ClientDestroyedError()) is False
        with pytest.raises(ClientDestroyedError):
            request.future.result()
