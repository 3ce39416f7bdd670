"""
Shared pytest fixtures for the provisioner tests.

This module provides:
- A SQLite database per test (aiosqlite, file in tmp_path)
- fakeredis in place of Redis
- A virtual clock and a recording sleep so backoff and rate-limit waits run instantly
- The in-memory FakePlatform transport wired through the real gateway
"""
from fakeredis import aioredis as fake_aioredis
import pytest

from campaign_provisioner.config import ProvisionerSettings
from campaign_provisioner.database import Database
from campaign_provisioner.provisioning.credentials import StaticCredentialResolver
from campaign_provisioner.provisioning.job_orchestrator import ProvisioningOrchestrator
from campaign_provisioner.provisioning.models import ProvisioningJob
from campaign_provisioner.provisioning.notifications import RecordingNotifier
from campaign_provisioner.provisioning.platform_gateway import PlatformGateway
from campaign_provisioner.provisioning.rate_limit_tracker import RateLimitTracker
from campaign_provisioner.provisioning.request_router import CredentialProfile, RequestRouter, RouteContext
from campaign_provisioner.provisioning.retry_executor import CallScope, RetryExecutor, RetryPolicy
from campaign_provisioner.provisioning.slot_tracker import SlotTracker
from campaign_provisioner.provisioning.state_manager import JobStateManager

from fakes import ACCOUNT, CREDENTIAL_IDS, USER, FakePlatform, RecordingSleep, VirtualClock, token_for


@pytest.fixture
def settings(tmp_path):
    return ProvisionerSettings(
        database_url=f"sqlite:///{tmp_path / 'provisioner.db'}",
        retry_jitter=0.0,
        batch_size=5,
        queue_poll_interval=0.01,
        ticker_interval=3600,
    )


@pytest.fixture
async def db(settings):
    database = Database(settings)
    await database.init_models()
    yield database
    await database.dispose()


@pytest.fixture
async def redis_client():
    client = fake_aioredis.FakeRedis(decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture
def clock():
    return VirtualClock()


@pytest.fixture
def sleep(clock):
    return RecordingSleep(clock)


@pytest.fixture
def tracker(clock):
    return RateLimitTracker(clock=clock)


@pytest.fixture
def profiles():
    """A single shared pool identity; tests add more where they need rotation."""
    return [CredentialProfile(credential_id="pool-a", whitelisted=True)]


@pytest.fixture
def router(tracker, profiles):
    return RequestRouter(tracker, profiles)


@pytest.fixture
def platform(clock):
    fake = FakePlatform(clock)
    fake.add_account(ACCOUNT)
    return fake


@pytest.fixture
def resolver():
    return StaticCredentialResolver({cid: token_for(cid) for cid in CREDENTIAL_IDS})


@pytest.fixture
def gateway(platform, resolver):
    return PlatformGateway(platform, resolver)


@pytest.fixture
def executor(tracker, router, sleep):
    return RetryExecutor(tracker, router, RetryPolicy(jitter=0.0), sleep=sleep)


@pytest.fixture
def scope():
    return CallScope(account_ref=ACCOUNT, context=RouteContext(user_id=USER))


@pytest.fixture
def slots(db):
    return SlotTracker(db, slot_retry_cap=3)


@pytest.fixture
def state(redis_client, db):
    return JobStateManager(redis_client, db)


@pytest.fixture
def make_job(state):
    """Persist a job row directly, bypassing submission."""
    counter = {"n": 0}

    async def factory(groups: int = 3, items: int = 0, **fields) -> ProvisioningJob:
        counter["n"] += 1
        values = dict(
            id=f"job-{counter['n']}",
            user_id=USER,
            account_ref=ACCOUNT,
            root_name=f"Spring Sale {counter['n']}",
            requested_groups=groups,
            requested_items=items,
        )
        values.update(fields)
        return await state.create_job(ProvisioningJob(**values))

    return factory


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
async def orchestrator(redis_client, db, gateway, tracker, router, settings, notifier, sleep, clock):
    orch = ProvisioningOrchestrator(
        redis_client=redis_client,
        db=db,
        gateway=gateway,
        tracker=tracker,
        router=router,
        settings=settings,
        notifier=notifier,
        sleep=sleep,
        clock=clock,
    )
    yield orch
    await orch.shutdown()
