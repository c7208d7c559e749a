from __future__ import annotations

import asyncio

import pytest

from bticino_sip.exceptions import (
    CertificateUpdateError,
    CertificateValidationError,
    SIPAuthenticationError,
    SIPTransportError,
)
from bticino_sip.sip.listener import ListenerState
from bticino_sip.structures import CertificateMaterial


NEW_CERTIFICATES = CertificateMaterial(certificate_pem="C2", private_key_pem="K2")


async def registered_listener(make_listener, **config_fields):
    listener = make_listener(**config_fields)
    await listener.connect()
    await listener.register()
    return listener


class TestRotation:
    @pytest.mark.asyncio
    async def test_live_rotation(self, make_listener, connector, scheduler, observer):
        listener = await registered_listener(make_listener)
        old_connection = connector.last
        task = asyncio.create_task(
            listener.update_certificates({"cert": "C2", "key": "K2"})
        )
        await scheduler.advance(0.9)
        assert not task.done()
        assert old_connection.is_closing
        assert len(connector.connections) == 1

        await scheduler.advance(0.1)
        await task
        assert len(connector.connections) == 2
        assert connector.calls[-1][2] == NEW_CERTIFICATES
        assert listener.current_certificates == NEW_CERTIFICATES
        assert listener.registered
        assert listener.keep_alive_armed
        assert not listener.closing
        await listener.disconnect()

        assert observer.names[2:] == [
            "disconnected",
            "connected",
            "registered",
            "certificates_updated",
            "disconnected",
        ]
        assert observer.payloads("certificates_updated") == [NEW_CERTIFICATES]
        assert "certificate_update_error" not in observer.names

    @pytest.mark.asyncio
    async def test_rotation_keeps_auto_reconnect(self, make_listener, connector, scheduler):
        listener = await registered_listener(make_listener)
        task = asyncio.create_task(listener.update_certificates(NEW_CERTIFICATES))
        await scheduler.advance(1.0)
        await task

        connector.last.close_remote()
        await scheduler.advance()
        assert listener.reconnect_pending
        await scheduler.advance(10.0)
        assert listener.registered
        assert connector.calls[-1][2] == NEW_CERTIFICATES
        await listener.disconnect()
        assert len(connector.connections) == 3

    @pytest.mark.asyncio
    async def test_connected_not_registered(
        self, make_listener, server, scheduler, observer
    ):
        listener = make_listener()
        await listener.connect()
        task = asyncio.create_task(listener.update_certificates(NEW_CERTIFICATES))
        await scheduler.advance(1.0)
        await task
        assert listener.connected
        assert not listener.registered
        await listener.disconnect()

        assert server.registers == []
        assert observer.names == [
            "connected",
            "disconnected",
            "connected",
            "certificates_updated",
            "disconnected",
        ]

    @pytest.mark.asyncio
    async def test_not_connected(self, make_listener, connector, observer):
        listener = make_listener()
        await listener.update_certificates({"certPEM": "C2", "privateKeyPem": "K2"})
        assert listener.current_certificates == NEW_CERTIFICATES
        assert connector.calls == []
        await listener.connect()
        await listener.disconnect()

        assert connector.calls[0][2] == NEW_CERTIFICATES
        assert observer.names[0] == "certificates_updated"

    @pytest.mark.asyncio
    async def test_while_reconnect_pending(
        self, make_listener, connector, scheduler, observer
    ):
        listener = await registered_listener(make_listener)
        connector.last.close_remote()
        await scheduler.advance()
        assert listener.reconnect_pending
        await listener.update_certificates(NEW_CERTIFICATES)
        assert listener.reconnect_pending
        await scheduler.advance(10.0)
        assert listener.registered
        await listener.disconnect()
        assert connector.calls[-1][2] == NEW_CERTIFICATES

    @pytest.mark.asyncio
    async def test_while_connecting(
        self, make_listener, connector, certificates, scheduler, observer
    ):
        connector.gate = asyncio.Event()
        listener = make_listener()
        connecting = asyncio.create_task(listener.connect())
        await scheduler.advance()
        assert listener.state is ListenerState.CONNECTING

        rotation = asyncio.create_task(listener.update_certificates(NEW_CERTIFICATES))
        await scheduler.advance()
        assert not rotation.done()
        assert listener.current_certificates == certificates
        assert "certificates_updated" not in observer.names

        connector.gate.set()
        await connecting
        await scheduler.advance(1.0)
        await rotation
        assert [call[2] for call in connector.calls] == [certificates, NEW_CERTIFICATES]
        assert connector.connections[0].is_closing
        assert listener.session.connection is connector.last
        assert listener.connected
        assert listener.current_certificates == NEW_CERTIFICATES
        await listener.disconnect()

        assert observer.names == [
            "connected",
            "disconnected",
            "connected",
            "certificates_updated",
            "disconnected",
        ]

    @pytest.mark.asyncio
    async def test_while_reconnecting(
        self, make_listener, connector, certificates, server, scheduler, observer
    ):
        listener = await registered_listener(make_listener)
        connector.gate = asyncio.Event()
        connector.last.close_remote()
        await scheduler.advance(10.0)
        assert listener.state is ListenerState.CONNECTING
        assert len(connector.calls) == 2

        rotation = asyncio.create_task(listener.update_certificates(NEW_CERTIFICATES))
        await scheduler.advance()
        connector.gate.set()
        await scheduler.advance(1.0)
        await rotation

        assert [call[2] for call in connector.calls] == [
            certificates,
            certificates,
            NEW_CERTIFICATES,
        ]
        assert connector.connections[1].is_closing
        assert listener.session.connection is connector.last
        assert listener.registered
        assert listener.keep_alive_armed
        assert not listener.reconnect_pending
        await scheduler.advance(60.0)
        assert len(connector.calls) == 3
        await listener.disconnect()

        assert observer.names[-3:] == ["registered", "certificates_updated", "disconnected"]
        assert "certificate_update_error" not in observer.names

    @pytest.mark.asyncio
    async def test_while_connecting_fails(
        self, make_listener, connector, certificates, scheduler, observer
    ):
        connector.gate = asyncio.Event()
        connector.failures.append(SIPTransportError("handshake failed"))
        listener = make_listener()
        connecting = asyncio.create_task(listener.connect())
        await scheduler.advance()

        rotation = asyncio.create_task(listener.update_certificates(NEW_CERTIFICATES))
        await scheduler.advance()
        connector.gate.set()
        with pytest.raises(SIPTransportError):
            await connecting
        await rotation
        assert listener.current_certificates == NEW_CERTIFICATES
        assert listener.state is ListenerState.DISCONNECTED

        connector.gate = None
        await listener.connect()
        assert connector.calls[-1][2] == NEW_CERTIFICATES
        await listener.disconnect()
        assert observer.names == ["error", "certificates_updated", "connected", "disconnected"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("value", "message"),
        [
            (None, "must be a mapping"),
            ({"key": "K2"}, "missing or invalid certificate"),
            ({"cert": "C2"}, "missing or invalid private key"),
            ({"cert": "", "key": "K2"}, "missing or invalid certificate"),
        ],
    )
    async def test_invalid_material(
        self, make_listener, connector, scheduler, observer, certificates, value, message
    ):
        listener = await registered_listener(make_listener)
        with pytest.raises(CertificateValidationError, match=message):
            await listener.update_certificates(value)
        await scheduler.advance()
        assert listener.registered
        assert listener.keep_alive_armed
        assert listener.current_certificates == certificates
        assert not connector.last.is_closing
        await listener.disconnect()

        assert len(connector.connections) == 1
        assert observer.names == ["connected", "registered", "disconnected"]

    @pytest.mark.asyncio
    async def test_connect_failure(self, make_listener, connector, scheduler, observer):
        listener = await registered_listener(make_listener)
        connector.failures.append(SIPTransportError("handshake failed"))
        task = asyncio.create_task(listener.update_certificates(NEW_CERTIFICATES))
        await scheduler.advance(1.0)
        with pytest.raises(CertificateUpdateError) as excinfo:
            await task
        assert isinstance(excinfo.value.__cause__, SIPTransportError)
        assert listener.state is ListenerState.DISCONNECTED
        assert listener.current_certificates == NEW_CERTIFICATES
        await scheduler.advance(60.0)
        assert len(connector.calls) == 2

        assert observer.names[2:] == ["disconnected", "error", "certificate_update_error"]
        (error,) = observer.payloads("certificate_update_error")
        assert isinstance(error, CertificateUpdateError)
        assert "certificates_updated" not in observer.names

    @pytest.mark.asyncio
    async def test_register_failure(
        self, make_listener, connector, server, scheduler, observer
    ):
        listener = await registered_listener(make_listener)
        server.always_challenge = True
        task = asyncio.create_task(listener.update_certificates(NEW_CERTIFICATES))
        await scheduler.advance(1.0)
        with pytest.raises(CertificateUpdateError) as excinfo:
            await task
        assert isinstance(excinfo.value.__cause__, SIPAuthenticationError)
        assert listener.session is None
        assert not listener.reconnect_pending
        await scheduler.advance(60.0)

        assert len(connector.connections) == 2
        assert observer.names[2:] == [
            "disconnected",
            "connected",
            "error",
            "disconnected",
            "certificate_update_error",
        ]

    @pytest.mark.asyncio
    async def test_disconnect_during_rotation(
        self, make_listener, connector, scheduler, observer
    ):
        listener = await registered_listener(make_listener)
        task = asyncio.create_task(listener.update_certificates(NEW_CERTIFICATES))
        await scheduler.advance()
        await listener.disconnect()
        await scheduler.advance(1.0)
        await task
        assert listener.closing
        assert listener.current_certificates == NEW_CERTIFICATES
        assert listener.session is None
        await scheduler.advance(60.0)

        assert len(connector.connections) == 1
        assert observer.names[2:] == ["disconnected", "certificates_updated"]

    @pytest.mark.asyncio
    async def test_serialized(self, make_listener, connector, scheduler, observer):
        third = CertificateMaterial(certificate_pem="C3", private_key_pem="K3")
        listener = await registered_listener(make_listener)
        first = asyncio.create_task(listener.update_certificates(NEW_CERTIFICATES))
        second = asyncio.create_task(listener.update_certificates(third))
        await scheduler.advance(1.0)
        await first
        assert not second.done()
        await scheduler.advance(1.0)
        await second
        assert listener.current_certificates == third
        assert listener.registered
        await listener.disconnect()

        assert [call[2] for call in connector.calls] == [
            connector.calls[0][2],
            NEW_CERTIFICATES,
            third,
        ]
        assert observer.payloads("certificates_updated") == [NEW_CERTIFICATES, third]
