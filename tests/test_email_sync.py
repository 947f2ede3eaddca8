"""
Tests for the email sync engine
"""
import asyncio
from datetime import timedelta

from conftest import make_raw
from inbox_assistant.association_index import EventAssociationIndex
from inbox_assistant.classifier import EmailClassifier
from inbox_assistant.config import DEFAULT_EMAIL_CATEGORIES
from inbox_assistant.email_sync import EmailSyncEngine
from inbox_assistant.message_cache import MessageCache
from inbox_assistant.thread_resolver import ThreadReplyResolver


def create_engine(db, mail, event_store, llm, clock, **kwargs) -> EmailSyncEngine:
    """Helper to wire a sync engine around the fakes"""
    return EmailSyncEngine(
        mail=mail,
        cache=MessageCache(db),
        thread_resolver=ThreadReplyResolver(mail),
        association_index=EventAssociationIndex(event_store, clock=clock),
        classifier=EmailClassifier(llm, DEFAULT_EMAIL_CATEGORIES),
        db=db,
        clock=clock,
        **kwargs,
    )


class TestGetAllEmails:
    """Test listing, hydration and caching"""

    def test_hydrates_and_enriches(self, db, mail, event_store, llm, clock):
        mail.add(make_raw("m1", internal_date=100, message_id_header="<m1@example.com>"))
        mail.add(make_raw("r1", thread_id="t-m1", internal_date=200, labels=["SENT"], in_reply_to="<m1@example.com>"),
                 in_inbox=False)
        mail.add(make_raw("m2", internal_date=300, from_address="someone@else.org"))
        engine = create_engine(db, mail, event_store, llm, clock)

        emails = asyncio.run(engine.get_all_emails())

        assert [e.id for e in emails] == ["m2", "m1"]
        m2, m1 = emails
        assert m1.replied is True
        assert m1.associated_event_id == "1"
        assert m1.associated_event_name == "Smith Wedding"
        assert m1.category == "event"
        assert m1.message_id_header == "<m1@example.com>"
        assert m2.replied is False
        assert m2.associated_event_id is None

    def test_html_only_body_gets_plaintext(self, db, mail, event_store, llm, clock):
        mail.add(make_raw("m1", text=None, html="<p>Hello&nbsp;there</p><p>Party for 40?</p>"))
        engine = create_engine(db, mail, event_store, llm, clock)

        email = asyncio.run(engine.get_all_emails())[0]

        assert "Hello" in email.text
        assert "Party for 40?" in email.text
        assert "<p>" not in email.text

    def test_cached_ids_not_fetched_again(self, db, mail, event_store, llm, clock):
        mail.add(make_raw("m1", internal_date=100))
        mail.add(make_raw("m2", internal_date=200))
        engine = create_engine(db, mail, event_store, llm, clock)

        async def run():
            await engine.get_all_emails()
            mail.get_full_calls.clear()
            clock.now += timedelta(minutes=2)
            mail.add(make_raw("m3", internal_date=300))
            return await engine.get_all_emails()

        emails = asyncio.run(run())

        assert mail.get_full_calls == ["m3"]
        assert [e.id for e in emails] == ["m3", "m2", "m1"]

    def test_nothing_new_means_no_fetches(self, db, mail, event_store, llm, clock):
        mail.add(make_raw("m1"))
        engine = create_engine(db, mail, event_store, llm, clock)

        async def run():
            first = await engine.get_all_emails()
            mail.get_full_calls.clear()
            second = await engine.get_all_emails(force_refresh=True)
            return first, second

        first, second = asyncio.run(run())

        assert mail.get_full_calls == []
        assert second == first

    def test_fresh_cache_skips_listing(self, db, mail, event_store, llm, clock):
        mail.add(make_raw("m1"))
        engine = create_engine(db, mail, event_store, llm, clock)

        async def run():
            await engine.get_all_emails()
            clock.now += timedelta(seconds=20)
            return await engine.get_all_emails()

        emails = asyncio.run(run())

        assert len(mail.list_calls) == 1
        assert [e.id for e in emails] == ["m1"]

    def test_next_minute_lists_again(self, db, mail, event_store, llm, clock):
        mail.add(make_raw("m1"))
        engine = create_engine(db, mail, event_store, llm, clock)

        async def run():
            await engine.get_all_emails()
            clock.now += timedelta(seconds=40)
            await engine.get_all_emails()

        asyncio.run(run())

        assert len(mail.list_calls) == 2

    def test_force_refresh_lists_again(self, db, mail, event_store, llm, clock):
        mail.add(make_raw("m1"))
        engine = create_engine(db, mail, event_store, llm, clock)

        async def run():
            await engine.get_all_emails()
            await engine.get_all_emails(force_refresh=True)

        asyncio.run(run())

        assert len(mail.list_calls) == 2

    def test_failed_fetch_omitted_and_retried(self, db, mail, event_store, llm, clock):
        mail.add(make_raw("m1", internal_date=100))
        mail.add(make_raw("m2", internal_date=200))
        mail.fail_ids.add("m2")
        engine = create_engine(db, mail, event_store, llm, clock)

        async def run():
            first = await engine.get_all_emails()
            mail.fail_ids.clear()
            second = await engine.get_all_emails(force_refresh=True)
            return first, second

        first, second = asyncio.run(run())

        assert [e.id for e in first] == ["m1"]
        assert [e.id for e in second] == ["m2", "m1"]
        assert mail.get_full_calls.count("m2") == 2
        assert mail.get_full_calls.count("m1") == 1

    def test_hydration_concurrency_bounded(self, db, mail, event_store, llm, clock):
        for i in range(12):
            mail.add(make_raw(f"m{i}", internal_date=i))
        mail.default_delay = 0.01
        engine = create_engine(db, mail, event_store, llm, clock, concurrency=5)

        emails = asyncio.run(engine.get_all_emails())

        assert len(emails) == 12
        assert len(mail.get_full_calls) == 12
        assert 1 <= mail.max_in_flight <= 5

    def test_batch_deadline_keeps_completed(self, db, mail, event_store, llm, clock):
        mail.add(make_raw("fast1", internal_date=100))
        mail.add(make_raw("fast2", internal_date=200))
        mail.add(make_raw("slow", internal_date=300))
        mail.delays["slow"] = 5.0
        engine = create_engine(db, mail, event_store, llm, clock, batch_timeout=0.2)

        async def run():
            emails = await engine.get_all_emails()
            return emails, "slow" in engine.cache

        emails, slow_cached = asyncio.run(run())

        assert [e.id for e in emails] == ["fast2", "fast1"]
        assert slow_cached is False

    def test_timestamp_only_for_unfiltered_retrieval(self, db, mail, event_store, llm, clock):
        mail.add(make_raw("m1"))
        engine = create_engine(db, mail, event_store, llm, clock)

        asyncio.run(engine.get_all_emails(query="from:guest@example.com"))
        assert engine.last_retrieval is None

        asyncio.run(engine.get_all_emails())
        assert engine.last_retrieval == clock.now

    def test_classification_failure_falls_back_to_other(self, db, mail, event_store, llm, clock):
        mail.add(make_raw("m1"))
        llm.classification_error = RuntimeError("model overloaded")
        engine = create_engine(db, mail, event_store, llm, clock)

        email = asyncio.run(engine.get_all_emails())[0]

        assert email.category == "other"

    def test_unknown_category_falls_back_to_other(self, db, mail, event_store, llm, clock):
        mail.add(make_raw("m1"))
        llm.category = "spam"
        engine = create_engine(db, mail, event_store, llm, clock)

        assert asyncio.run(engine.get_all_emails())[0].category == "other"

    def test_derived_flags_survive_resync(self, db, mail, event_store, llm, clock):
        mail.add(make_raw("m1"))
        engine = create_engine(db, mail, event_store, llm, clock)

        async def run():
            email = (await engine.get_all_emails())[0]
            engine.update_email_in_cache(email.model_copy(update={"has_notified": True}))
            return await engine.get_all_emails(force_refresh=True)

        emails = asyncio.run(run())

        assert emails[0].has_notified is True

    def test_update_during_slow_refresh_not_lost(self, db, mail, event_store, llm, clock):
        mail.add(make_raw("m1", internal_date=100))
        engine = create_engine(db, mail, event_store, llm, clock)

        async def run():
            email = (await engine.get_all_emails())[0]
            mail.add(make_raw("m2", internal_date=200))
            mail.delays["m2"] = 0.1
            refresh = asyncio.create_task(engine.get_all_emails(force_refresh=True))
            await asyncio.sleep(0.02)
            engine.update_email_in_cache(email.model_copy(update={"has_notified": True}))
            return await refresh

        emails = asyncio.run(run())

        assert [e.id for e in emails] == ["m2", "m1"]
        assert emails[1].has_notified is True
        assert engine.get_email("m1").has_notified is True
        reloaded = {m.id: m for m in MessageCache(db).load()}
        assert reloaded["m1"].has_notified is True
        assert "m2" in reloaded

    def test_concurrent_refreshes_fetch_once(self, db, mail, event_store, llm, clock):
        mail.add(make_raw("m1"))
        mail.default_delay = 0.05
        engine = create_engine(db, mail, event_store, llm, clock)

        async def run():
            return await asyncio.gather(
                engine.get_all_emails(force_refresh=True),
                engine.get_all_emails(force_refresh=True),
            )

        first, second = asyncio.run(run())

        assert mail.get_full_calls == ["m1"]
        assert [e.id for e in first] == [e.id for e in second] == ["m1"]

    def test_failing_event_store_does_not_stall_hydration(self, db, mail, event_store, llm, clock):
        for i in range(10):
            mail.add(make_raw(f"m{i}", internal_date=i))
        event_store.error = ConnectionError("event store down")
        event_store.delay = 0.1
        engine = create_engine(db, mail, event_store, llm, clock, batch_timeout=0.5)

        emails = asyncio.run(engine.get_all_emails())

        assert len(emails) == 10
        assert all(e.associated_event_id is None for e in emails)
        assert event_store.load_calls == 1


class TestArchiveEmail:
    """Test archiving through the provider"""

    def test_archive_removes_inbox_label(self, db, mail, event_store, llm, clock):
        mail.add(make_raw("m1", labels=["INBOX", "UNREAD"]))
        engine = create_engine(db, mail, event_store, llm, clock)

        async def run():
            await engine.get_all_emails()
            return await engine.archive_email("m1")

        archived = asyncio.run(run())

        assert mail.label_changes == [("m1", [], ["INBOX"])]
        assert archived.labels == ["UNREAD"]
        assert engine.get_email("m1").labels == ["UNREAD"]

    def test_archive_uncached_email(self, db, mail, event_store, llm, clock):
        engine = create_engine(db, mail, event_store, llm, clock)

        assert asyncio.run(engine.archive_email("unknown")) is None
        assert mail.label_changes == [("unknown", [], ["INBOX"])]
