"""WireGuard key generation and client config rendering."""

from __future__ import annotations

import base64
import binascii
import io
from dataclasses import dataclass

import qrcode
from qrcode.image.svg import SvgPathImage
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
    PublicFormat,
)

from vpn_orchestrator.domain.requests import DEFAULT_ALLOWED_IPS, DEFAULT_DNS_SERVERS

DEFAULT_KEEPALIVE = 25
# Each instance serves exactly one peer, so addresses never collide.
SERVER_ADDRESS = "10.8.0.1/24"
CLIENT_ADDRESS = "10.8.0.2/32"

# Scanned from phone screens, so favour redundancy over density.
QR_ERROR_CORRECTION = qrcode.constants.ERROR_CORRECT_H
QR_BORDER = 2


@dataclass(frozen=True)
class KeyPair:
    private_key: str
    public_key: str

    def __repr__(self) -> str:
        return f"KeyPair(public_key={self.public_key})"


def generate_keypair() -> KeyPair:
    """Generate a Curve25519 key pair encoded the way ``wg genkey`` prints it."""
    private_key = X25519PrivateKey.generate()
    private_raw = private_key.private_bytes(Encoding.Raw, PrivateFormat.Raw, NoEncryption())
    public_raw = private_key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)
    return KeyPair(
        private_key=base64.b64encode(private_raw).decode("ascii"),
        public_key=base64.b64encode(public_raw).decode("ascii"),
    )


def public_key_for(private_key: str) -> str:
    raw = base64.b64decode(private_key)
    key = X25519PrivateKey.from_private_bytes(raw)
    return base64.b64encode(key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)).decode(
        "ascii"
    )


def is_valid_key(key: str) -> bool:
    try:
        return len(base64.b64decode(key, validate=True)) == 32
    except (binascii.Error, ValueError):
        return False


def render_client_config(
    *,
    client_private_key: str,
    client_address: str,
    server_public_key: str,
    server_endpoint: str,
    allowed_ips: str = DEFAULT_ALLOWED_IPS,
    dns_servers: tuple[str, ...] = DEFAULT_DNS_SERVERS,
    persistent_keepalive: int = DEFAULT_KEEPALIVE,
) -> str:
    lines = [
        "[Interface]",
        f"PrivateKey = {client_private_key}",
        f"Address = {client_address}",
    ]
    if dns_servers:
        lines.append(f"DNS = {', '.join(dns_servers)}")
    lines += [
        "",
        "[Peer]",
        f"PublicKey = {server_public_key}",
        f"Endpoint = {server_endpoint}",
        f"AllowedIPs = {allowed_ips}",
        f"PersistentKeepalive = {persistent_keepalive}",
    ]
    return "\n".join(lines) + "\n"


def render_qr_code(content: str) -> str:
    """SVG QR code of a client config, for import by the WireGuard mobile apps."""
    qr = qrcode.QRCode(
        error_correction=QR_ERROR_CORRECTION,
        border=QR_BORDER,
        image_factory=SvgPathImage,
    )
    qr.add_data(content)
    qr.make(fit=True)
    buffer = io.BytesIO()
    qr.make_image().save(buffer)
    return buffer.getvalue().decode("utf-8")
