"""Tests for MessagingQuotaGuard admission, metering, window resets and reporting."""

from __future__ import annotations

import dataclasses
from datetime import timedelta

import pytest

from relaygate.adapters.outbound.persistence.memory import InMemoryMessagingQuotaRepository
from relaygate.domain.entities import DEFAULT_CHANNEL_LIMITS, ChannelQuota
from relaygate.domain.enums import MessageChannel, MessageStatus
from relaygate.shared.governance import MessageInput, MessagingQuotaGuard, hash_recipient
from relaygate.shared.governance.messaging_quota import FAIL_OPEN_WARNING

TENANT = "tenant-1"
WHATSAPP = MessageChannel.WHATSAPP


class BrokenRepository(InMemoryMessagingQuotaRepository):
    async def get_quota(self, tenant_id, channel):
        raise ConnectionError("database unavailable")

    async def save_message_log(self, entry):
        raise ConnectionError("database unavailable")


@pytest.fixture
def repo() -> InMemoryMessagingQuotaRepository:
    return InMemoryMessagingQuotaRepository()


@pytest.fixture
def guard(repo: InMemoryMessagingQuotaRepository, date_clock) -> MessagingQuotaGuard:
    return MessagingQuotaGuard(repo, clock=date_clock)


async def _seed(
    repo: InMemoryMessagingQuotaRepository, date_clock, channel=WHATSAPP, **fields
) -> ChannelQuota:
    quota = ChannelQuota.with_defaults(TENANT, channel, date_clock())
    return await repo.create_quota(dataclasses.replace(quota, **fields))


def _message(status: MessageStatus = MessageStatus.SENT, **kwargs) -> MessageInput:
    kwargs.setdefault("channel", WHATSAPP)
    kwargs.setdefault("provider", "meta")
    kwargs.setdefault("recipient", "+15550001111")
    return MessageInput(tenant_id=TENANT, status=status, **kwargs)


# ═══════════════════════════════════════════════════════════════
#  Admission
# ═══════════════════════════════════════════════════════════════
class TestCheckQuota:
    @pytest.mark.asyncio
    async def test_first_check_creates_quota_with_channel_defaults(
        self, guard: MessagingQuotaGuard, repo: InMemoryMessagingQuotaRepository
    ) -> None:
        result = await guard.check_quota(TENANT, "sms")
        assert result.allowed is True
        assert result.channel == MessageChannel.SMS
        assert result.warning is None
        assert result.limits == DEFAULT_CHANNEL_LIMITS[MessageChannel.SMS]
        quota = await repo.get_quota(TENANT, MessageChannel.SMS)
        assert (quota.daily_limit, quota.monthly_limit) == (50, 500)

    @pytest.mark.asyncio
    async def test_daily_limit_denies(
        self, guard: MessagingQuotaGuard, repo: InMemoryMessagingQuotaRepository, date_clock
    ) -> None:
        await _seed(repo, date_clock, daily_used=100, monthly_used=100)

        result = await guard.check_quota(TENANT, WHATSAPP)

        assert result.allowed is False
        assert result.reason == "Daily WHATSAPP limit exceeded (100/100)"
        assert result.usage.daily == 100
        assert result.can_queue is False

    @pytest.mark.asyncio
    async def test_monthly_limit_denies(
        self, guard: MessagingQuotaGuard, repo: InMemoryMessagingQuotaRepository, date_clock
    ) -> None:
        await _seed(repo, date_clock, monthly_used=2000)
        result = await guard.check_quota(TENANT, WHATSAPP)
        assert result.allowed is False
        assert result.reason == "Monthly WHATSAPP limit exceeded (2000/2000)"

    @pytest.mark.asyncio
    async def test_batch_that_would_overflow_is_denied(
        self, guard: MessagingQuotaGuard, repo: InMemoryMessagingQuotaRepository, date_clock
    ) -> None:
        await _seed(repo, date_clock, daily_used=98)
        assert (await guard.check_quota(TENANT, WHATSAPP, 2)).allowed is True
        assert (await guard.check_quota(TENANT, WHATSAPP, 3)).allowed is False

    @pytest.mark.asyncio
    async def test_denial_reports_queue_preference(
        self, guard: MessagingQuotaGuard, repo: InMemoryMessagingQuotaRepository, date_clock
    ) -> None:
        await _seed(repo, date_clock, daily_used=100, queue_on_limit=True)
        result = await guard.check_quota(TENANT, WHATSAPP)
        assert result.allowed is False
        assert result.can_queue is True

    @pytest.mark.asyncio
    async def test_warning_names_the_fuller_window(
        self, guard: MessagingQuotaGuard, repo: InMemoryMessagingQuotaRepository, date_clock
    ) -> None:
        await _seed(repo, date_clock, daily_used=80, monthly_used=80)
        result = await guard.check_quota(TENANT, WHATSAPP)
        assert result.allowed is True
        assert result.warning == "WHATSAPP quota warning: 80% of daily limit used"

        await _seed(repo, date_clock, channel=MessageChannel.EMAIL, daily_used=10, monthly_used=9000)
        result = await guard.check_quota(TENANT, "email")
        assert result.warning == "EMAIL quota warning: 90% of monthly limit used"

    @pytest.mark.asyncio
    async def test_custom_warning_threshold(
        self, repo: InMemoryMessagingQuotaRepository, date_clock
    ) -> None:
        guard = MessagingQuotaGuard(repo, warning_percent=50, clock=date_clock)
        await _seed(repo, date_clock, daily_used=50, monthly_used=50)
        result = await guard.check_quota(TENANT, WHATSAPP)
        assert result.warning == "WHATSAPP quota warning: 50% of daily limit used"

    @pytest.mark.asyncio
    async def test_storage_errors_fail_open(self, date_clock) -> None:
        guard = MessagingQuotaGuard(BrokenRepository(), clock=date_clock)
        result = await guard.check_quota(TENANT, WHATSAPP)
        assert result.allowed is True
        assert result.warning == FAIL_OPEN_WARNING
        assert result.limits == DEFAULT_CHANNEL_LIMITS[WHATSAPP]

    @pytest.mark.asyncio
    async def test_unknown_channel_is_rejected(self, guard: MessagingQuotaGuard) -> None:
        with pytest.raises(ValueError):
            await guard.check_quota(TENANT, "PIGEON")


# ═══════════════════════════════════════════════════════════════
#  Metering
# ═══════════════════════════════════════════════════════════════
class TestRecordMessage:
    @pytest.mark.asyncio
    async def test_delivered_message_moves_counters(
        self, guard: MessagingQuotaGuard, repo: InMemoryMessagingQuotaRepository
    ) -> None:
        entry = await guard.record_message(_message())

        assert entry.cost_cents == 5
        assert entry.recipient_hash == hash_recipient("+15550001111")
        quota = await repo.get_quota(TENANT, WHATSAPP)
        assert (quota.daily_used, quota.monthly_used) == (1, 1)
        assert quota.cost_this_month_cents == 5

    @pytest.mark.asyncio
    async def test_supplied_cost_wins_over_channel_default(
        self, guard: MessagingQuotaGuard, repo: InMemoryMessagingQuotaRepository
    ) -> None:
        await guard.record_message(_message(channel="sms", cost_cents=7))
        quota = await repo.get_quota(TENANT, MessageChannel.SMS)
        assert quota.cost_this_month_cents == 7

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [MessageStatus.FAILED, MessageStatus.BLOCKED, MessageStatus.QUEUED])
    async def test_undelivered_message_is_logged_only(
        self, guard: MessagingQuotaGuard, repo: InMemoryMessagingQuotaRepository, status
    ) -> None:
        await guard.record_message(_message(status, error_message="nope"))

        (entry,) = repo.logs
        assert entry.status == status
        assert entry.error_message == "nope"
        assert await repo.get_quota(TENANT, WHATSAPP) is None

    @pytest.mark.asyncio
    async def test_recording_never_raises(self, date_clock) -> None:
        guard = MessagingQuotaGuard(BrokenRepository(), clock=date_clock)
        assert await guard.record_message(_message()) is None

    def test_recipient_hash_is_normalized(self) -> None:
        digest = hash_recipient("  Ops@Example.com ")
        assert digest == hash_recipient("ops@example.com")
        assert len(digest) == 32
        assert digest != hash_recipient("ops@example.org")


# ═══════════════════════════════════════════════════════════════
#  Window resets
# ═══════════════════════════════════════════════════════════════
class TestQuotaResets:
    @pytest.mark.asyncio
    async def test_new_day_clears_daily_count_only(
        self, guard: MessagingQuotaGuard, repo: InMemoryMessagingQuotaRepository, date_clock
    ) -> None:
        await _seed(repo, date_clock, daily_used=100, monthly_used=300, cost_this_month_cents=1500)
        date_clock.advance(days=1)

        result = await guard.check_quota(TENANT, WHATSAPP)

        assert result.allowed is True
        assert result.usage.daily == 0
        assert result.usage.monthly == 300

    @pytest.mark.asyncio
    async def test_new_month_clears_monthly_count_and_cost(
        self, guard: MessagingQuotaGuard, repo: InMemoryMessagingQuotaRepository, date_clock
    ) -> None:
        await _seed(repo, date_clock, daily_used=3, monthly_used=2000, cost_this_month_cents=1500)
        date_clock.advance(days=17)

        result = await guard.check_quota(TENANT, WHATSAPP)

        assert result.allowed is True
        assert result.usage.monthly == 0
        quota = await repo.get_quota(TENANT, WHATSAPP)
        assert quota.cost_this_month_cents == 0

    @pytest.mark.asyncio
    async def test_stale_reset_stamp_is_not_applied_twice(
        self, guard: MessagingQuotaGuard, repo: InMemoryMessagingQuotaRepository, date_clock
    ) -> None:
        stale = await _seed(repo, date_clock, daily_used=40)
        date_clock.advance(days=1)
        await guard.check_and_reset_counters(stale)
        await guard.record_message(_message())

        # A second caller holding the pre-reset snapshot must not wipe new usage.
        refreshed = await guard.check_and_reset_counters(stale)
        assert refreshed.daily_used == 1


# ═══════════════════════════════════════════════════════════════
#  Administration and reporting
# ═══════════════════════════════════════════════════════════════
class TestQuotaAdministration:
    @pytest.mark.asyncio
    async def test_update_limits(
        self, guard: MessagingQuotaGuard, repo: InMemoryMessagingQuotaRepository
    ) -> None:
        updated = await guard.update_channel_limits(
            TENANT, "whatsapp", updated_by="admin-1", daily_limit=10, queue_on_limit=True
        )
        assert updated.daily_limit == 10
        assert updated.queue_on_limit is True
        assert updated.monthly_limit == 2000

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "updates",
        [{"daily_limit": -1}, {"monthly_limit": "100"}, {"queue_on_limit": 1}, {"daily_used": 0}],
    )
    async def test_invalid_limit_updates_are_rejected(
        self, guard: MessagingQuotaGuard, updates
    ) -> None:
        with pytest.raises(ValueError):
            await guard.update_channel_limits(TENANT, WHATSAPP, **updates)

    @pytest.mark.asyncio
    async def test_channel_stats(
        self, guard: MessagingQuotaGuard, repo: InMemoryMessagingQuotaRepository, date_clock
    ) -> None:
        await _seed(repo, date_clock, daily_used=25, monthly_used=500, cost_this_month_cents=250)

        stats = await guard.get_channel_stats(TENANT, WHATSAPP)
        assert stats.daily_percent == 25.0
        assert stats.monthly_percent == 25.0
        assert stats.cost_this_month_cents == 250

        every = await guard.get_all_channel_stats(TENANT)
        assert set(every) == set(MessageChannel)
        assert every[MessageChannel.EMAIL].quota.daily_limit == 500

    @pytest.mark.asyncio
    async def test_messaging_breakdown(self, guard: MessagingQuotaGuard, date_clock) -> None:
        start = date_clock()
        await guard.record_message(_message())
        await guard.record_message(_message(MessageStatus.FAILED, provider="twilio"))
        date_clock.advance(days=1)
        await guard.record_message(_message(channel="sms", provider="twilio"))
        await guard.record_message(_message(MessageStatus.BLOCKED))

        report = await guard.get_messaging_breakdown(TENANT, start, date_clock() + timedelta(minutes=1))

        by_channel = {a.key: a for a in report.by_channel}
        assert by_channel["WHATSAPP"].sent == 1
        assert by_channel["WHATSAPP"].failed == 1
        assert by_channel["SMS"].cost_cents == 10
        by_provider = {a.key: a for a in report.by_provider}
        assert (by_provider["twilio"].sent, by_provider["twilio"].failed) == (1, 1)
        assert report.by_status == {"SENT": 2, "FAILED": 1, "BLOCKED": 1}
        assert [a.key for a in report.daily_trend] == ["2026-03-15", "2026-03-16"]
        assert [a.sent for a in report.daily_trend] == [1, 1]
