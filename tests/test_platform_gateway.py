"""Tests for transport error classification and the gateway adapter."""
import pytest

from campaign_provisioner.provisioning.errors import (
    CredentialUnavailableError,
    NotFoundError,
    PermanentRemoteError,
    RateLimitedError,
    TransientRemoteError,
)
from campaign_provisioner.provisioning.models import ResourceKind
from campaign_provisioner.provisioning.platform_gateway import PlatformError, UsageMetadata, classify_platform_error

from fakes import ACCOUNT, INVALID_PARAMETER, token_for


class TestClassification:
    @pytest.mark.parametrize("error", [
        PlatformError(code=190, message="Error validating access token"),
        PlatformError(code=None, message="Ad account is disabled"),
        PlatformError(code=200, message="Requires ads_management permission"),
    ])
    def test_account_level_permanent(self, error):
        classified = classify_platform_error(error)
        assert isinstance(classified, PermanentRemoteError)
        assert classified.is_account_level

    def test_invalid_parameter_is_resource_level(self):
        classified = classify_platform_error(INVALID_PARAMETER)
        assert isinstance(classified, PermanentRemoteError)
        assert not classified.is_account_level

    @pytest.mark.parametrize("error", [
        PlatformError(code=17, message="User request limit reached"),
        PlatformError(code=None, message="Too many requests", http_status=429),
    ])
    def test_rate_limited(self, error):
        assert isinstance(classify_platform_error(error), RateLimitedError)

    def test_rate_limit_reset_falls_back_to_usage_window(self):
        usage = UsageMetadata(used=200, limit=200, window_reset_at=1234.0)
        classified = classify_platform_error(PlatformError(code=4, message="limit"), usage)
        assert classified.reset_at == 1234.0
        assert classified.usage is usage

    def test_not_found(self):
        assert isinstance(classify_platform_error(PlatformError(code=803, message="gone")), NotFoundError)

    @pytest.mark.parametrize("error", [
        PlatformError(code=2, message="Service temporarily unavailable"),
        PlatformError(code=None, message="upstream", http_status=502),
        PlatformError(code=None, message="ECONNRESET"),
        PlatformError(code=None, message="something odd"),
    ])
    def test_transient(self, error):
        assert isinstance(classify_platform_error(error), TransientRemoteError)


class TestGateway:
    async def test_resolves_token_per_credential(self, gateway, platform):
        result = await gateway.create("pool-a", ACCOUNT, ResourceKind.ROOT, {"name": "r"})
        assert result.value in platform.resources
        assert platform.calls[-1][1] == token_for("pool-a")

    async def test_error_response_raises(self, gateway, platform):
        platform.fail_nth("create", 1, INVALID_PARAMETER, kind=ResourceKind.ROOT)
        with pytest.raises(PermanentRemoteError):
            await gateway.create("pool-a", ACCOUNT, ResourceKind.ROOT, {"name": "r"})

    async def test_delete_missing_resource_is_not_an_error(self, gateway):
        result = await gateway.delete("pool-a", "root-404")
        assert result.value is False

    async def test_unknown_credential(self, gateway):
        with pytest.raises(CredentialUnavailableError) as info:
            await gateway.get("pool-z", ACCOUNT)
        assert info.value.credential_id == "pool-z"
        assert info.value.is_account_level
