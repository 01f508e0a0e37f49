from __future__ import annotations

import logging
from datetime import timedelta

import pytest

from db.client import session_scope
from ledger_pipeline import api
from ledger_pipeline.events import (
    ChangeEvent,
    ChangeFeed,
    PendingQueued,
    PendingResolved,
    TransactionSaved,
)
from ledger_pipeline.models import PendingStatus, ProcessSuccess, Queued
from tests.helpers.db import BASE_TIME, make_parsed, pending_row


def test_subscribe_publish_unsubscribe():
    feed = ChangeFeed()
    got: list[ChangeEvent] = []
    unsubscribe = feed.subscribe(got.append)
    assert len(feed) == 1

    feed.publish(PendingQueued(1))
    unsubscribe()
    unsubscribe()
    feed.publish(PendingQueued(2))

    assert got == [PendingQueued(1)]
    assert len(feed) == 0


def test_failing_listener_does_not_stop_others(caplog: pytest.LogCaptureFixture):
    feed = ChangeFeed()
    got: list[ChangeEvent] = []

    def broken(_event: ChangeEvent) -> None:
        raise RuntimeError("listener bug")

    feed.subscribe(broken)
    feed.subscribe(got.append)
    with caplog.at_level(logging.ERROR, logger="ledger_pipeline.events"):
        feed.publish(PendingQueued(7))

    assert got == [PendingQueued(7)]
    assert "listener bug" in caplog.text


def test_api_publishes_after_commit(db_url: str):
    feed = ChangeFeed()
    events: list[ChangeEvent] = []
    feed.subscribe(events.append)

    saved = api.process_transaction(make_parsed(), database_url=db_url, feed=feed)
    assert isinstance(saved, ProcessSuccess)
    api.process_transaction(make_parsed(), database_url=db_url, feed=feed)  # duplicate
    assert events == [TransactionSaved(saved.transaction_id, "direct")]

    events.clear()
    later = BASE_TIME + timedelta(minutes=1)
    queued = api.queue_transaction(
        make_parsed(timestamp=later),
        now=BASE_TIME,
        ttl=timedelta(hours=1),
        database_url=db_url,
        feed=feed,
    )
    assert isinstance(queued, Queued)
    confirmed = api.confirm(queued.pending_id, database_url=db_url, feed=feed)
    tx_id = confirmed.result.transaction_id
    api.confirm(queued.pending_id, database_url=db_url, feed=feed)  # stale, no events
    assert events == [
        PendingQueued(queued.pending_id),
        TransactionSaved(tx_id, "confirm"),
        PendingResolved(queued.pending_id, PendingStatus.CONFIRMED, tx_id),
    ]


def test_reject_and_sweep_events(db_url: str):
    feed = ChangeFeed()
    events: list[ChangeEvent] = []

    ttl = timedelta(hours=1)
    first = api.queue_transaction(make_parsed(), now=BASE_TIME, ttl=ttl, database_url=db_url)
    second = api.queue_transaction(
        make_parsed(timestamp=BASE_TIME + timedelta(minutes=1)),
        now=BASE_TIME,
        ttl=ttl,
        database_url=db_url,
    )
    feed.subscribe(events.append)

    api.reject(first.pending_id, database_url=db_url, feed=feed)
    report = api.run_expiry_sweep(now=BASE_TIME + 2 * ttl, database_url=db_url, feed=feed)
    assert report.saved == 1

    with session_scope(database_url=db_url) as session:
        tx_id = pending_row(session, second.pending_id).transaction_id
    assert tx_id is not None
    assert events == [
        PendingResolved(first.pending_id, PendingStatus.REJECTED, None),
        TransactionSaved(tx_id, "auto_save"),
        PendingResolved(second.pending_id, PendingStatus.AUTO_SAVED, tx_id),
    ]


def test_confirm_all_events(db_url: str):
    queued = api.queue_transaction(
        make_parsed(), now=BASE_TIME, ttl=timedelta(hours=1), database_url=db_url
    )
    feed = ChangeFeed()
    events: list[ChangeEvent] = []
    feed.subscribe(events.append)

    report = api.confirm_all(database_url=db_url, feed=feed)
    assert report.saved == 1

    with session_scope(database_url=db_url) as session:
        tx_id = pending_row(session, queued.pending_id).transaction_id
    assert events == [
        TransactionSaved(tx_id, "confirm"),
        PendingResolved(queued.pending_id, PendingStatus.CONFIRMED, tx_id),
    ]
