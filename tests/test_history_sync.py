"""
בדיקות HistorySyncService - full sync, הליכה על history.list, fallback ו-poll.
"""
import pytest
from sqlalchemy import select

from app.core.exceptions import AccountNotFoundError, HistoryExpiredError, MailboxApiError, SyncError
from app.db.models.email import Email
from app.db.models.email_account import EmailAccount, SyncMode, SyncStatus
from app.domain.services.mailbox_client import HistoryPage
from app.domain.services.work_queue import (
    PRIORITY_BACKGROUND,
    PRIORITY_FETCH,
    JobOptions,
    PollAccountJob,
    poll_job_key,
)
from tests.helpers import gmail_message


async def _account_state(db_session, account_id: int):
    result = await db_session.execute(
        select(
            EmailAccount.history_id,
            EmailAccount.sync_status,
            EmailAccount.last_error,
            EmailAccount.last_sync_at,
        ).where(EmailAccount.id == account_id)
    )
    return result.one()


async def _store_message(services, account, message_id: str, labels=None):
    services.materializer.client.messages[message_id] = gmail_message(message_id, labels=labels)
    return await services.materializer.fetch_and_store(account.id, message_id)


class TestFullSync:

    @pytest.mark.integration
    async def test_enqueues_fetch_per_message_and_sets_cursor(
        self, services, fake_queue, fake_mailbox, account_factory, db_session
    ):
        account = await account_factory(history_id=None)
        for message_id in ("m1", "m2", "m3"):
            fake_mailbox.messages[message_id] = gmail_message(message_id)

        result = await services.sync.full_sync(account.id)

        assert result.mode == "full"
        assert result.enqueued_messages == 3
        assert result.cursor == "500"
        jobs = fake_queue.jobs("fetch-message")
        assert [job.message_id for job in jobs] == ["m1", "m2", "m3"]
        assert jobs[0].thread_id == "thread-m1"
        assert all(options.priority == PRIORITY_FETCH for options in fake_queue.options_for("fetch-message"))

        state = await _account_state(db_session, account.id)
        assert state.history_id == "500"
        assert state.sync_status == SyncStatus.ACTIVE
        assert state.last_sync_at is not None

    @pytest.mark.unit
    async def test_respects_max_results(self, services, fake_queue, fake_mailbox, account_factory):
        account = await account_factory(history_id=None)
        for index in range(5):
            fake_mailbox.messages[f"m{index}"] = gmail_message(f"m{index}")

        result = await services.sync.full_sync(account.id, max_results=2)

        assert result.enqueued_messages == 2
        assert ("list_messages", account.id, 2) in fake_mailbox.calls

    @pytest.mark.unit
    async def test_full_sync_never_lowers_cursor(self, services, fake_mailbox, account_factory, db_session):
        account = await account_factory(history_id="900")
        fake_mailbox.profile_history_id = "500"

        await services.sync.full_sync(account.id)

        assert (await _account_state(db_session, account.id)).history_id == "900"

    @pytest.mark.unit
    async def test_unknown_account(self, services):
        with pytest.raises(AccountNotFoundError):
            await services.sync.full_sync(404404)


class TestSyncHistory:

    @pytest.mark.integration
    async def test_walks_all_pages_and_advances_cursor(
        self, services, fake_queue, fake_mailbox, account_factory, db_session
    ):
        account = await account_factory(history_id="100")
        fake_mailbox.history_pages = [
            HistoryPage(
                records=[{"id": "101", "messagesAdded": [{"message": {"id": "a", "threadId": "t-a"}}]}],
                history_id="130",
                next_page_token="1",
            ),
            HistoryPage(
                records=[
                    {"id": "120", "messagesAdded": [{"message": {"id": "b"}}, {"message": {"id": "a"}}]},
                ],
                history_id="130",
            ),
        ]

        result = await services.sync.sync_history(account.id, "100", "105", trigger="webhook")

        assert result.mode == "incremental"
        assert result.fetched_ids == ["a", "b"]
        assert [job.message_id for job in fake_queue.jobs("fetch-message")] == ["a", "b"]
        history_calls = [call for call in fake_mailbox.calls if call[0] == "list_history"]
        assert history_calls == [
            ("list_history", account.id, "100", None),
            ("list_history", account.id, "100", "1"),
        ]
        assert (await _account_state(db_session, account.id)).history_id == "130"

    @pytest.mark.unit
    async def test_cursor_falls_back_to_end_cursor(self, services, fake_mailbox, account_factory, db_session):
        account = await account_factory(history_id="100")
        fake_mailbox.history_pages = [HistoryPage(records=[], history_id=None)]

        result = await services.sync.sync_history(account.id, "100", "105")

        assert result.cursor == "105"
        assert (await _account_state(db_session, account.id)).history_id == "105"

    @pytest.mark.integration
    async def test_applies_deletes_and_label_changes(
        self, services, fake_mailbox, account_factory, db_session
    ):
        account = await account_factory(email="owner@example.com", history_id="100")
        await _store_message(services, account, "keep", labels=["INBOX", "UNREAD"])
        await _store_message(services, account, "gone")
        fake_mailbox.history_pages = [
            HistoryPage(
                records=[
                    {"id": "101", "messagesDeleted": [{"message": {"id": "gone"}}]},
                    {"id": "102", "labelsRemoved": [{"message": {"id": "keep"}, "labelIds": ["UNREAD"]}]},
                    {"id": "103", "labelsAdded": [{"message": {"id": "keep"}, "labelIds": ["STARRED"]}]},
                    {"id": "104", "labelsAdded": [{"message": {"id": "never-synced"}, "labelIds": ["STARRED"]}]},
                ],
                history_id="110",
            )
        ]

        result = await services.sync.sync_history(account.id, "100", "110")

        assert result.deleted_messages == 1
        assert result.label_changes == 2
        rows = (
            await db_session.execute(
                select(Email.provider_message_id, Email.is_deleted, Email.is_read, Email.is_starred, Email.labels)
                .order_by(Email.provider_message_id)
            )
        ).all()
        by_id = {row.provider_message_id: row for row in rows}
        assert by_id["gone"].is_deleted is True
        assert by_id["keep"].is_deleted is False
        assert by_id["keep"].is_read is True
        assert by_id["keep"].is_starred is True
        assert by_id["keep"].labels == ["INBOX", "STARRED"]

    @pytest.mark.unit
    async def test_range_already_covered_is_skipped(self, services, fake_queue, fake_mailbox, account_factory):
        account = await account_factory(history_id="200")

        result = await services.sync.sync_history(account.id, "100", "150")

        assert result.mode == "skipped"
        assert result.cursor == "200"
        assert fake_mailbox.calls == []
        assert fake_queue.enqueued == []

    @pytest.mark.unit
    async def test_starts_from_account_cursor_not_job_start(self, services, fake_mailbox, account_factory):
        """job ישן עם start נמוך יותר - ההליכה מתחילה מה-cursor העדכני של החשבון"""
        account = await account_factory(history_id="120")

        await services.sync.sync_history(account.id, "100", "150")

        assert fake_mailbox.calls[0] == ("list_history", account.id, "120", None)

    @pytest.mark.unit
    async def test_account_without_cursor_uses_job_start(self, services, fake_mailbox, account_factory):
        account = await account_factory(history_id=None)

        await services.sync.sync_history(account.id, "100", "150")

        assert fake_mailbox.calls[0] == ("list_history", account.id, "100", None)

    @pytest.mark.unit
    async def test_no_cursor_anywhere_runs_full_sync(self, services, fake_mailbox, fake_queue, account_factory):
        account = await account_factory(history_id=None)
        fake_mailbox.messages["m1"] = gmail_message("m1")

        result = await services.sync.sync_history(account.id)

        assert result.mode == "full"
        assert [job.message_id for job in fake_queue.jobs("fetch-message")] == ["m1"]

    @pytest.mark.integration
    async def test_expired_history_falls_back_to_full_sync(
        self, services, fake_mailbox, fake_queue, account_factory, db_session
    ):
        account = await account_factory(history_id="100")
        fake_mailbox.history_error = HistoryExpiredError("100")
        fake_mailbox.messages["m1"] = gmail_message("m1")

        result = await services.sync.sync_history(account.id, "100", "105")

        assert result.mode == "full"
        assert len(fake_queue.jobs("fetch-message")) == 1
        assert (await _account_state(db_session, account.id)).history_id == "500"

    @pytest.mark.integration
    async def test_failure_records_error_and_keeps_cursor(
        self, services, fake_mailbox, account_factory, db_session
    ):
        account = await account_factory(history_id="100")
        account_id = account.id
        fake_mailbox.history_error = MailboxApiError("quota exceeded", http_status=429)

        with pytest.raises(MailboxApiError):
            await services.sync.sync_history(account_id, "100", "105")

        state = await _account_state(db_session, account_id)
        assert state.history_id == "100"
        assert state.sync_status == SyncStatus.ERROR
        assert "quota exceeded" in state.last_error

    @pytest.mark.unit
    async def test_failure_mid_walk_does_not_advance_cursor(
        self, services, fake_mailbox, fake_queue, account_factory, db_session
    ):
        account = await account_factory(history_id="100")
        account_id = account.id
        fake_mailbox.history_pages = [
            HistoryPage(
                records=[{"id": "101", "messagesAdded": [{"message": {"id": "a"}}]}],
                history_id="140",
                next_page_token="1",
            ),
        ]
        # הדף השני לא קיים - IndexError באמצע ההליכה

        with pytest.raises(IndexError):
            await services.sync.sync_history(account_id, "100", "140")

        assert (await _account_state(db_session, account_id)).history_id == "100"


class TestSyncAccount:

    @pytest.mark.unit
    async def test_incremental_when_cursor_exists(self, services, fake_queue, account_factory):
        account = await account_factory(history_id="100")

        task_id = await services.sync.sync_account(account.id, source="manual")

        assert task_id == "task-1"
        jobs = fake_queue.jobs("sync-history")
        assert len(jobs) == 1
        assert jobs[0].trigger == "manual"
        assert jobs[0].start_cursor is None

    @pytest.mark.unit
    async def test_full_when_requested_or_no_cursor(self, services, fake_queue, account_factory):
        with_cursor = await account_factory(history_id="100")
        without_cursor = await account_factory(history_id=None)

        await services.sync.sync_account(with_cursor.id, full_sync=True)
        await services.sync.sync_account(without_cursor.id)

        assert [job.account_id for job in fake_queue.jobs("full-sync")] == [with_cursor.id, without_cursor.id]
        assert fake_queue.jobs("sync-history") == []

    @pytest.mark.unit
    async def test_enqueue_failure_records_sync_error(self, services, fake_queue, account_factory, db_session):
        account = await account_factory(history_id="100")
        account_id = account.id
        fake_queue.fail_with = ConnectionError("broker down")

        with pytest.raises(SyncError) as exc_info:
            await services.sync.sync_account(account_id)

        assert isinstance(exc_info.value.__cause__, ConnectionError)
        assert exc_info.value.details == {"error": "ConnectionError", "account_id": account_id}

        assert (await _account_state(db_session, account_id)).sync_status == SyncStatus.ERROR

    @pytest.mark.unit
    async def test_incremental_sync_priority(self, services, fake_queue, account_factory):
        account = await account_factory()

        await services.sync.incremental_sync(account.id, "recovery", priority=PRIORITY_BACKGROUND)

        options = fake_queue.options_for("sync-history")[0]
        assert options.priority == PRIORITY_BACKGROUND
        assert fake_queue.jobs("sync-history")[0].trigger == "recovery"


class TestPollAccount:

    @pytest.mark.unit
    async def test_polling_account_syncs(self, services, fake_mailbox, account_factory):
        account = await account_factory(history_id="100", sync_mode=SyncMode.POLLING)

        result = await services.sync.poll_account(account.id)

        assert result is not None
        assert result.mode == "incremental"
        assert fake_mailbox.calls[0][0] == "list_history"

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "sync_mode, sync_enabled",
        [(SyncMode.PUSH, True), (SyncMode.POLLING, False)],
    )
    async def test_cancels_when_no_longer_polling(
        self, services, fake_queue, fake_mailbox, account_factory, sync_mode, sync_enabled
    ):
        account = await account_factory(sync_mode=sync_mode, sync_enabled=sync_enabled)
        key = poll_job_key(account.id)
        await fake_queue.schedule_recurring(key, PollAccountJob(account_id=account.id), JobOptions(), 300)

        result = await services.sync.poll_account(account.id)

        assert result is None
        assert key not in fake_queue.recurring
        assert fake_mailbox.calls == []

    @pytest.mark.unit
    async def test_cancels_for_deleted_account(self, services, fake_queue):
        key = poll_job_key(777)
        await fake_queue.schedule_recurring(key, PollAccountJob(account_id=777), JobOptions(), 300)

        assert await services.sync.poll_account(777) is None
        assert key not in fake_queue.recurring
