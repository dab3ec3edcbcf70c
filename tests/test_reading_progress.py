import pytest

from conftest import refuse, reply
from nomanweb_bff.errors import ClientValidationFailure
from nomanweb_bff.reading_progress import COMPLETED_NOTIFICATION, ReadingProgressReporter, quantize

UPDATE_PATH = "/api/reading-progress/chapter/ch-1/update"


@pytest.fixture
def last_sent():
    return {}


@pytest.fixture
def reporter(proxy, last_sent):
    return ReadingProgressReporter(proxy, last_sent, token="reader-token", retry_wait_seconds=0)


@pytest.mark.parametrize("raw, expected", [(0, 0), (4.9, 0), (5, 5), (12, 10), (99.9, 95), (100, 100)])
def test_quantize(raw, expected):
    assert quantize(raw) == expected


async def test_one_write_per_bucket(reporter, upstream):
    upstream.on("POST", UPDATE_PATH, reply(json={"progressPercentage": 0, "isCompleted": False}))

    reports = [await reporter.report("ch-1", raw) for raw in (3, 7, 9, 12, 14, 15, 99)]

    assert [r.sent for r in reports] == [False, True, False, True, False, True, True]
    sent = [c.url.params["progressPercentage"] for c in upstream.calls_to(UPDATE_PATH)]
    assert sent == ["5", "10", "15", "95"]


async def test_bearer_token_is_sent(reporter, upstream):
    upstream.on("POST", UPDATE_PATH, reply(json={"isCompleted": False}))
    await reporter.report("ch-1", 50)
    assert upstream.calls[0].headers["authorization"] == "Bearer reader-token"


async def test_last_sent_is_per_chapter(reporter, upstream, last_sent):
    upstream.on("POST", UPDATE_PATH, reply(json={"isCompleted": False}))
    upstream.on("POST", "/api/reading-progress/chapter/ch-2/update", reply(json={"isCompleted": False}))

    await reporter.report("ch-1", 20)
    second = await reporter.report("ch-2", 20)

    assert second.sent
    assert last_sent == {"ch-1": 20, "ch-2": 20}


async def test_server_errors_are_retried_three_times(reporter, upstream):
    upstream.on("POST", UPDATE_PATH, reply(500, json={"message": "boom"}))

    report = await reporter.report("ch-1", 40)

    assert report.sent and not report.delivered
    assert report.notification is None
    assert len(upstream.calls_to(UPDATE_PATH)) == 3


async def test_transport_errors_are_retried(reporter, upstream):
    upstream.on("POST", UPDATE_PATH, refuse)
    report = await reporter.report("ch-1", 40)
    assert not report.delivered
    assert len(upstream.calls) == 3


async def test_recovers_on_second_attempt(reporter, upstream):
    upstream.on(
        "POST",
        UPDATE_PATH,
        reply(503, text="Service Unavailable", headers={"content-type": "text/html"}),
        reply(json={"isCompleted": False}),
    )
    report = await reporter.report("ch-1", 40)
    assert report.delivered
    assert len(upstream.calls) == 2


@pytest.mark.parametrize("status_code", [400, 401, 403, 404])
async def test_client_errors_are_not_retried(reporter, upstream, status_code):
    upstream.on("POST", UPDATE_PATH, reply(status_code, json={"message": "nope"}))

    report = await reporter.report("ch-1", 40)

    assert report.sent and not report.delivered
    assert len(upstream.calls) == 1


async def test_failed_bucket_is_not_resent(reporter, upstream):
    upstream.on("POST", UPDATE_PATH, reply(401, json={"message": "Unauthorized"}))
    await reporter.report("ch-1", 40)
    again = await reporter.report("ch-1", 41)
    assert not again.sent
    assert len(upstream.calls) == 1


async def test_completion_sets_notification(reporter, upstream):
    upstream.on("POST", UPDATE_PATH, reply(json={"progressPercentage": 100, "isCompleted": True}))

    report = await reporter.report("ch-1", 100)

    assert report.completed
    assert report.notification == COMPLETED_NOTIFICATION


@pytest.mark.parametrize("entity_id, raw", [("", 50), ("  ", 50), ("ch-1", "abc"), ("ch-1", None),
                                            ("ch-1", -1), ("ch-1", 150), ("ch-1", float("nan"))])
async def test_invalid_input_makes_no_call(reporter, upstream, entity_id, raw):
    with pytest.raises(ClientValidationFailure):
        await reporter.report(entity_id, raw)
    assert upstream.calls == []
