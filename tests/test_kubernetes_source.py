"""Unit tests for the Kubernetes machine source plugin."""

from datetime import datetime, timezone

import aiohttp
import pytest
import pytest_asyncio
from pydantic import ValidationError
from unittest.mock import AsyncMock, MagicMock, patch

from machines import MachinePhase
from plugins.base import SourceUnavailable
from plugins.sources.kubernetes import KubernetesMachineSource
from plugins.sources.kubernetes.models import decode_machine, decode_provider_status

from conftest import NAMESPACE, ROLE_LABEL_KEY, make_raw_machine


class TestDecodeMachine:
    """Tests for decoding Machine API objects."""

    def test_running_master(self):
        record = decode_machine(make_raw_machine("master001"), ROLE_LABEL_KEY)

        assert record.name == "master001"
        assert record.namespace == NAMESPACE
        assert record.role_label == "master"
        assert record.phase == MachinePhase.RUNNING
        assert record.instance_id == "master001-instance"
        assert record.created_at == datetime(2024, 1, 1, tzinfo=timezone.utc)

    def test_terminated_instance(self):
        raw = make_raw_machine("master002", instance_state="terminated")
        assert decode_machine(raw, ROLE_LABEL_KEY).phase == MachinePhase.TERMINATED

    def test_deletion_timestamp_is_terminated(self):
        raw = make_raw_machine(
            "master002", deletion_timestamp="2024-02-01T00:00:00Z"
        )
        assert decode_machine(raw, ROLE_LABEL_KEY).phase == MachinePhase.TERMINATED

    def test_whitespace_instance_id_is_none(self):
        raw = make_raw_machine("master001", instance_id="  ")
        assert decode_machine(raw, ROLE_LABEL_KEY).instance_id is None

    def test_missing_labels_and_status(self):
        raw = {"metadata": {"name": "bare", "labels": None}}
        record = decode_machine(raw, ROLE_LABEL_KEY)

        assert record.role_label is None
        assert record.phase == MachinePhase.UNKNOWN
        assert record.instance_id is None

    def test_malformed_provider_status(self):
        raw = make_raw_machine("master001")
        raw["status"]["providerStatus"] = {"instanceId": ["not", "a", "string"]}
        record = decode_machine(raw, ROLE_LABEL_KEY)

        assert record.instance_id is None
        assert record.phase == MachinePhase.UNKNOWN

    def test_missing_metadata_raises(self):
        with pytest.raises(ValidationError):
            decode_machine({"status": {}}, ROLE_LABEL_KEY)

    def test_decode_provider_status_empty(self):
        status = decode_provider_status(None)
        assert status.instance_id is None
        assert status.instance_state is None


def mock_response(status=200, payload=None, text=""):
    response = MagicMock()
    response.status = status
    response.json = AsyncMock(return_value=payload)
    response.text = AsyncMock(return_value=text)
    context = MagicMock()
    context.__aenter__ = AsyncMock(return_value=response)
    context.__aexit__ = AsyncMock(return_value=False)
    return context


def mock_session(*responses):
    session = MagicMock()
    session.get = MagicMock(side_effect=list(responses))
    session_cm = MagicMock()
    session_cm.__aenter__ = AsyncMock(return_value=session)
    session_cm.__aexit__ = AsyncMock(return_value=False)
    return session_cm, session


@pytest.mark.asyncio
class TestKubernetesMachineSource:
    """Tests for KubernetesMachineSource."""

    @pytest_asyncio.fixture
    async def source(self, tmp_path):
        token_file = tmp_path / "token"
        token_file.write_text("secret-token\n")
        plugin = KubernetesMachineSource()
        await plugin.initialize(
            {
                "api_server": "https://api.cluster:6443/",
                "token_file": str(token_file),
                "ca_file": str(tmp_path / "missing-ca.crt"),
                "page_size": 2,
            }
        )
        return plugin

    async def test_plugin_metadata(self):
        plugin = KubernetesMachineSource()
        assert plugin.name == "kubernetes"
        assert plugin.version == "1.0.0"

    async def test_list_machines_follows_continue_token(self, source):
        page1 = {
            "items": [
                make_raw_machine("master001"),
                make_raw_machine("worker001", role="worker"),
            ],
            "metadata": {"continue": "token-2"},
        }
        page2 = {"items": [make_raw_machine("master002")], "metadata": {}}
        session_cm, session = mock_session(
            mock_response(payload=page1), mock_response(payload=page2)
        )

        with patch(
            "plugins.sources.kubernetes.source.aiohttp.ClientSession",
            return_value=session_cm,
        ):
            records = await source.list_machines(NAMESPACE)

        assert [r.name for r in records] == ["master001", "worker001", "master002"]
        first, second = session.get.call_args_list
        assert first.args[0] == (
            "https://api.cluster:6443/apis/machine.openshift.io/v1beta1"
            "/namespaces/default/machines"
        )
        assert first.kwargs["params"] == {"limit": "2"}
        assert second.kwargs["params"] == {"limit": "2", "continue": "token-2"}
        assert first.kwargs["headers"]["Authorization"] == "Bearer secret-token"
        assert first.kwargs["ssl"] is True

    async def test_skips_undecodable_items(self, source):
        payload = {"items": [{"status": {}}, make_raw_machine("master001")]}
        session_cm, _ = mock_session(mock_response(payload=payload))

        with patch(
            "plugins.sources.kubernetes.source.aiohttp.ClientSession",
            return_value=session_cm,
        ):
            records = await source.list_machines(NAMESPACE)

        assert [r.name for r in records] == ["master001"]

    async def test_skips_items_with_non_mapping_metadata(self, source):
        payload = {"items": [make_raw_machine("master001"), {"metadata": "oops"}]}
        session_cm, _ = mock_session(mock_response(payload=payload))

        with patch(
            "plugins.sources.kubernetes.source.aiohttp.ClientSession",
            return_value=session_cm,
        ):
            records = await source.list_machines(NAMESPACE)

        assert [r.name for r in records] == ["master001"]

    async def test_token_read_once_per_listing(self, source):
        page1 = {"items": [make_raw_machine("master001")], "metadata": {"continue": "t"}}
        page2 = {"items": [make_raw_machine("master002")], "metadata": {}}
        session_cm, session = mock_session(
            mock_response(payload=page1), mock_response(payload=page2)
        )

        with patch(
            "plugins.sources.kubernetes.source.aiohttp.ClientSession",
            return_value=session_cm,
        ), patch.object(
            source, "_get_headers", wraps=source._get_headers
        ) as mock_headers:
            await source.list_machines(NAMESPACE)

        mock_headers.assert_called_once()
        first, second = session.get.call_args_list
        assert second.kwargs["headers"]["Authorization"] == "Bearer secret-token"

    async def test_http_error_is_source_unavailable(self, source):
        session_cm, _ = mock_session(mock_response(status=403, text="forbidden"))

        with patch(
            "plugins.sources.kubernetes.source.aiohttp.ClientSession",
            return_value=session_cm,
        ):
            with pytest.raises(SourceUnavailable, match="403"):
                await source.list_machines(NAMESPACE)

    async def test_malformed_envelope_is_source_unavailable(self, source):
        session_cm, _ = mock_session(mock_response(payload={"items": "nope"}))

        with patch(
            "plugins.sources.kubernetes.source.aiohttp.ClientSession",
            return_value=session_cm,
        ):
            with pytest.raises(SourceUnavailable, match="Malformed"):
                await source.list_machines(NAMESPACE)

    async def test_transport_error_is_source_unavailable(self, source):
        session_cm, session = mock_session()
        session.get = MagicMock(side_effect=aiohttp.ClientConnectionError("refused"))

        with patch(
            "plugins.sources.kubernetes.source.aiohttp.ClientSession",
            return_value=session_cm,
        ):
            with pytest.raises(SourceUnavailable, match="refused"):
                await source.list_machines(NAMESPACE)

    async def test_no_token_file_sends_no_authorization(self, tmp_path):
        plugin = KubernetesMachineSource()
        await plugin.initialize({"token_file": str(tmp_path / "absent")})
        assert "Authorization" not in plugin._get_headers()
