from __future__ import annotations

import types

import pytest

from hostplane.core.errors import ProviderAuthError, ProviderConfigError, TransientProviderError
from hostplane.providers.fake import FakeProvider
import scripts.provider_smoke as provider_smoke


class AuthFailingProvider(FakeProvider):
    async def list_catalog(self, kind, *, timeout_s=None):
        # Simulate a revoked token without hitting a real provider.
        raise ProviderAuthError("hetzner list_locations failed: unauthorized", status_code=401)


@pytest.mark.asyncio
async def test_provider_smoke_lists_catalog(monkeypatch, capsys) -> None:
    monkeypatch.setattr(provider_smoke, "build_provider", lambda name: FakeProvider())

    args = types.SimpleNamespace(provider="fake", kind="location")
    assert await provider_smoke._run(args) == 0
    output = capsys.readouterr().out
    assert "name=fsn1" in output
    assert "name=hel1" in output


@pytest.mark.asyncio
async def test_provider_smoke_surfaces_auth_error(monkeypatch) -> None:
    monkeypatch.setattr(provider_smoke, "build_provider", lambda name: AuthFailingProvider())

    args = types.SimpleNamespace(provider="hetzner", kind="location")
    with pytest.raises(ProviderAuthError):
        # _run should surface the underlying error for main() to map.
        await provider_smoke._run(args)

    code, message = provider_smoke._format_error(ProviderAuthError("no"))
    assert code == 3
    assert "PROVIDER_AUTH_ERROR" in message


def test_provider_smoke_error_codes() -> None:
    assert provider_smoke._format_error(ProviderConfigError("missing token"))[0] == 2
    assert provider_smoke._format_error(TransientProviderError("503"))[0] == 4
    assert provider_smoke._format_error(RuntimeError("?"))[0] == 1
