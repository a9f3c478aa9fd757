"""
Unit tests for the tinytuya-backed device client.

tinytuya.Device is patched; its blocking calls still run through
asyncio.to_thread, so the tests exercise the real threading path.
"""

import asyncio
import contextlib
import threading
import time
from unittest.mock import MagicMock, patch

import pytest

from tuya_mqtt_bridge.devices.tuya_client import TuyaDeviceClient, response_data_points, response_error
from tuya_mqtt_bridge.exceptions import CommandSendError, DeviceConnectionError
from tuya_mqtt_bridge.structs import DeviceConnected, DeviceDataUpdate, DeviceDisconnected, DeviceError


@pytest.fixture
def tuya_device():
    """Mock tinytuya.Device with a healthy status and an offline report on the first receive."""
    device = MagicMock()
    device.status.return_value = {"devId": "bf01", "dps": {"1": True, "2": 50}}
    device.receive.side_effect = [{"dps": {"2": 60}}, {"Err": "905", "Error": "Network Error: Device Unreachable"}]
    device.heartbeat.return_value = None
    device.set_multiple_values.return_value = None
    return device


@pytest.fixture
def events():
    return []


@pytest.fixture
def tuya_client(lamp1_config, events):
    return TuyaDeviceClient(lamp1_config, events.append, socket_timeout=0.5)


async def _wait_reader(client):
    task = client._reader_task
    if task is not None:
        await asyncio.wait_for(task, timeout=2)


class TestResponseHelpers:
    """Tests for tinytuya response inspection"""

    def test_response_error(self):
        assert response_error({"Err": "901", "Error": "Network Error"}) == ("901", "Network Error")
        assert response_error({"dps": {"1": True}}) is None
        assert response_error(None) is None

    def test_response_data_points(self):
        assert response_data_points({"dps": {1: True}}) == {"1": True}
        assert response_data_points({"dps": {}}) is None
        assert response_data_points({"Err": "904"}) is None
        assert response_data_points(None) is None


class TestConnect:
    """Tests for TuyaDeviceClient.connect()"""

    @pytest.mark.asyncio
    async def test_connect_emits_connected_then_refresh(self, tuya_client, tuya_device, events, lamp1_config):
        with patch("tuya_mqtt_bridge.devices.tuya_client.tinytuya.Device", return_value=tuya_device) as device_cls:
            await tuya_client.connect()
            await _wait_reader(tuya_client)

        kwargs = device_cls.call_args.kwargs
        assert kwargs["dev_id"] == lamp1_config.id
        assert kwargs["address"] == lamp1_config.ip
        assert kwargs["local_key"] == lamp1_config.key
        assert kwargs["version"] == 3.3
        assert kwargs["persist"] is True
        tuya_device.set_socketTimeout.assert_called_once_with(0.5)

        assert events[0] == DeviceConnected()
        assert events[1] == DeviceDataUpdate({"1": True, "2": 50}, refresh=True)
        assert events[2] == DeviceDataUpdate({"2": 60})
        assert events[3] == DeviceDisconnected()
        assert tuya_client.is_connected() is False
        tuya_device.close.assert_called()

    @pytest.mark.asyncio
    async def test_connect_error_response_reports_failure(self, tuya_client, tuya_device, events):
        tuya_device.status.return_value = {"Err": "901", "Error": "Network Error: Unable to Connect"}

        with patch("tuya_mqtt_bridge.devices.tuya_client.tinytuya.Device", return_value=tuya_device):
            await tuya_client.connect()

        assert len(events) == 2
        assert isinstance(events[0], DeviceError)
        assert isinstance(events[0].error, DeviceConnectionError)
        assert "901" in str(events[0].error)
        assert events[1] == DeviceDisconnected()
        assert tuya_client.is_connected() is False
        tuya_device.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_connect_exception_reports_failure(self, tuya_client, events):
        with patch("tuya_mqtt_bridge.devices.tuya_client.tinytuya.Device", side_effect=OSError("no route to host")):
            await tuya_client.connect()

        assert [type(event) for event in events] == [DeviceError, DeviceDisconnected]
        assert "no route to host" in str(events[0].error)

    @pytest.mark.asyncio
    async def test_connect_while_connected_is_noop(self, tuya_client, tuya_device, events):
        tuya_device.receive.side_effect = lambda: time.sleep(0.01)
        with patch("tuya_mqtt_bridge.devices.tuya_client.tinytuya.Device", return_value=tuya_device) as device_cls:
            await tuya_client.connect()
            await tuya_client.connect()
            await tuya_client.close()

        assert device_cls.call_count == 1
        assert events.count(DeviceConnected()) == 1


class TestReader:
    """Tests for the background reader"""

    @pytest.mark.asyncio
    async def test_idle_receive_sends_heartbeat(self, tuya_client, tuya_device, events):
        tuya_device.receive.side_effect = [None, {"Err": "902", "Error": "Timeout"}, {"Err": "901", "Error": "x"}]

        with patch("tuya_mqtt_bridge.devices.tuya_client.tinytuya.Device", return_value=tuya_device):
            await tuya_client.connect()
            await _wait_reader(tuya_client)

        assert tuya_device.heartbeat.call_count == 2
        assert events[-1] == DeviceDisconnected()

    @pytest.mark.asyncio
    async def test_non_fatal_error_is_reported_and_reading_continues(self, tuya_client, tuya_device, events):
        tuya_device.receive.side_effect = [
            {"Err": "904", "Error": "Unexpected Payload from Device"},
            {"dps": {"1": False}},
            {"Err": "905", "Error": "offline"},
        ]

        with patch("tuya_mqtt_bridge.devices.tuya_client.tinytuya.Device", return_value=tuya_device):
            await tuya_client.connect()
            await _wait_reader(tuya_client)

        kinds = [type(event) for event in events]
        assert kinds == [DeviceConnected, DeviceDataUpdate, DeviceError, DeviceDataUpdate, DeviceDisconnected]

    @pytest.mark.asyncio
    async def test_socket_exception_drops_link(self, tuya_client, tuya_device, events):
        tuya_device.receive.side_effect = ConnectionResetError("reset by peer")

        with patch("tuya_mqtt_bridge.devices.tuya_client.tinytuya.Device", return_value=tuya_device):
            await tuya_client.connect()
            await _wait_reader(tuya_client)

        assert events[-1] == DeviceDisconnected()
        assert tuya_client.is_connected() is False


class TestSend:
    """Tests for TuyaDeviceClient.send()"""

    @pytest.mark.asyncio
    async def test_send_when_disconnected_raises(self, tuya_client):
        with pytest.raises(CommandSendError):
            await tuya_client.send({"1": True})

    @pytest.mark.asyncio
    async def test_send_writes_all_data_points_at_once(self, tuya_client, tuya_device):
        tuya_device.receive.side_effect = lambda: time.sleep(0.01)
        with patch("tuya_mqtt_bridge.devices.tuya_client.tinytuya.Device", return_value=tuya_device):
            await tuya_client.connect()
            try:
                await tuya_client.send({"1": False, "2": 10})
            finally:
                await tuya_client.close()

        tuya_device.set_multiple_values.assert_called_once_with({"1": False, "2": 10}, nowait=True)

    @pytest.mark.asyncio
    async def test_send_error_response_raises(self, tuya_client, tuya_device):
        tuya_device.receive.side_effect = lambda: time.sleep(0.01)
        tuya_device.set_multiple_values.return_value = {"Err": "904", "Error": "Unexpected Payload"}
        with patch("tuya_mqtt_bridge.devices.tuya_client.tinytuya.Device", return_value=tuya_device):
            await tuya_client.connect()
            try:
                with pytest.raises(CommandSendError):
                    await tuya_client.send({"1": False})
            finally:
                await tuya_client.close()

    @pytest.mark.asyncio
    async def test_link_loss_waits_for_command_in_flight(self, tuya_client, tuya_device, events):
        """The socket is closed only after the command on the wire returns; later sends are refused"""
        on_wire = threading.Event()
        finish = threading.Event()
        calls = []

        def slow_send(*_args, **_kwargs):
            on_wire.set()
            _ = finish.wait(timeout=2)
            calls.append("send")

        tuya_device.receive.side_effect = lambda: time.sleep(0.01)
        tuya_device.set_multiple_values.side_effect = slow_send
        tuya_device.close.side_effect = lambda: calls.append("close")
        with patch("tuya_mqtt_bridge.devices.tuya_client.tinytuya.Device", return_value=tuya_device):
            await tuya_client.connect()
            send_task = asyncio.create_task(tuya_client.send({"1": False}))
            _ = await asyncio.to_thread(on_wire.wait, 2)
            lost_task = asyncio.create_task(tuya_client._link_lost("[905] unreachable"))
            await asyncio.sleep(0.02)

            assert calls == []
            finish.set()
            await asyncio.wait_for(asyncio.gather(send_task, lost_task), timeout=2)
            with pytest.raises(CommandSendError):
                await tuya_client.send({"1": True})
            await tuya_client.close()

        assert calls == ["send", "close"]
        assert events[-1] == DeviceDisconnected()

    @pytest.mark.asyncio
    async def test_close_stops_reader_without_events(self, tuya_client, tuya_device, events):
        tuya_device.receive.side_effect = lambda: time.sleep(0.01)
        with patch("tuya_mqtt_bridge.devices.tuya_client.tinytuya.Device", return_value=tuya_device):
            await tuya_client.connect()
            reader = tuya_client._reader_task
            await tuya_client.close()

        assert reader is not None
        assert reader.done()
        assert DeviceDisconnected() not in events
        with contextlib.suppress(asyncio.CancelledError):
            await reader
