"""
TLS cipher and protocol version policy.

Two builders produce the TLS settings a node accepts:

- ``minimal_tls13_policy()``: TLS 1.3 only. TLS 1.3 negotiates its own
  suites, so no list is carried.
- ``compatible_tls12_policy()``: TLS 1.2 and newer with a curated, ordered
  list of TLS 1.2 suites that the server enforces over the client's order.

A ``TLSSettings`` value is turned into an ``ssl.SSLContext`` with
``server_context()`` or ``client_context()``.
"""

import ssl
import logging
from dataclasses import dataclass, field
from typing import List, Optional

log = logging.getLogger(__name__)

# The list of cipher suites we will use / suggest for TLS 1.2 connections,
# in preference order. 256 bit AES-GCM ahead of 128 bit, then ChaCha20,
# then CBC suites. Nothing with DES, 3DES or RC4.
TLS12_CIPHER_SUITES = (
    "TLS_ECDHE_RSA_WITH_AES_256_GCM_SHA384",
    "TLS_ECDHE_ECDSA_WITH_AES_256_GCM_SHA384",
    "TLS_ECDHE_RSA_WITH_AES_128_GCM_SHA256",
    "TLS_ECDHE_ECDSA_WITH_AES_128_GCM_SHA256",
    "TLS_ECDHE_RSA_WITH_CHACHA20_POLY1305_SHA256",
    "TLS_ECDHE_ECDSA_WITH_CHACHA20_POLY1305_SHA256",
    "TLS_ECDHE_RSA_WITH_AES_128_CBC_SHA256",
    "TLS_ECDHE_RSA_WITH_AES_128_CBC_SHA",
    "TLS_ECDHE_ECDSA_WITH_AES_128_CBC_SHA256",
    "TLS_ECDHE_ECDSA_WITH_AES_128_CBC_SHA",
    "TLS_ECDHE_RSA_WITH_AES_256_CBC_SHA",
    "TLS_ECDHE_ECDSA_WITH_AES_256_CBC_SHA",
    "TLS_RSA_WITH_AES_128_GCM_SHA256",
    "TLS_RSA_WITH_AES_256_GCM_SHA384",
    "TLS_RSA_WITH_AES_128_CBC_SHA256",
    "TLS_RSA_WITH_AES_128_CBC_SHA",
    "TLS_RSA_WITH_AES_256_CBC_SHA",
)

# IANA suite name -> OpenSSL cipher name, as understood by SSLContext.set_ciphers()
OPENSSL_CIPHER_NAMES = {
    "TLS_ECDHE_RSA_WITH_AES_256_GCM_SHA384": "ECDHE-RSA-AES256-GCM-SHA384",
    "TLS_ECDHE_ECDSA_WITH_AES_256_GCM_SHA384": "ECDHE-ECDSA-AES256-GCM-SHA384",
    "TLS_ECDHE_RSA_WITH_AES_128_GCM_SHA256": "ECDHE-RSA-AES128-GCM-SHA256",
    "TLS_ECDHE_ECDSA_WITH_AES_128_GCM_SHA256": "ECDHE-ECDSA-AES128-GCM-SHA256",
    "TLS_ECDHE_RSA_WITH_CHACHA20_POLY1305_SHA256": "ECDHE-RSA-CHACHA20-POLY1305",
    "TLS_ECDHE_ECDSA_WITH_CHACHA20_POLY1305_SHA256": "ECDHE-ECDSA-CHACHA20-POLY1305",
    "TLS_ECDHE_RSA_WITH_AES_128_CBC_SHA256": "ECDHE-RSA-AES128-SHA256",
    "TLS_ECDHE_RSA_WITH_AES_128_CBC_SHA": "ECDHE-RSA-AES128-SHA",
    "TLS_ECDHE_ECDSA_WITH_AES_128_CBC_SHA256": "ECDHE-ECDSA-AES128-SHA256",
    "TLS_ECDHE_ECDSA_WITH_AES_128_CBC_SHA": "ECDHE-ECDSA-AES128-SHA",
    "TLS_ECDHE_RSA_WITH_AES_256_CBC_SHA": "ECDHE-RSA-AES256-SHA",
    "TLS_ECDHE_ECDSA_WITH_AES_256_CBC_SHA": "ECDHE-ECDSA-AES256-SHA",
    "TLS_RSA_WITH_AES_128_GCM_SHA256": "AES128-GCM-SHA256",
    "TLS_RSA_WITH_AES_256_GCM_SHA384": "AES256-GCM-SHA384",
    "TLS_RSA_WITH_AES_128_CBC_SHA256": "AES128-SHA256",
    "TLS_RSA_WITH_AES_128_CBC_SHA": "AES128-SHA",
    "TLS_RSA_WITH_AES_256_CBC_SHA": "AES256-SHA",
}


@dataclass(frozen=True)
class TLSSettings:
    """TLS settings accepted by a node.

    Attributes:
        minimum_version: Lowest protocol version accepted
        cipher_suites: Ordered IANA names of permitted TLS 1.2 suites.
                       Ignored when TLS 1.3 is negotiated.
        prefer_server_ciphers: Server picks from its own order, not the client's
    """
    minimum_version: ssl.TLSVersion
    cipher_suites: List[str] = field(default_factory=list)
    prefer_server_ciphers: bool = False

    def openssl_cipher_string(self) -> str:
        """Return the suite list in ``SSLContext.set_ciphers()`` syntax."""
        return ":".join(OPENSSL_CIPHER_NAMES[name] for name in self.cipher_suites)

    def _apply(self, context: ssl.SSLContext) -> ssl.SSLContext:
        context.minimum_version = self.minimum_version
        context.options |= ssl.OP_NO_COMPRESSION
        if self.cipher_suites:
            context.set_ciphers(self.openssl_cipher_string())
        if self.prefer_server_ciphers:
            context.options |= ssl.OP_CIPHER_SERVER_PREFERENCE
        else:
            # SSLContext() turns server preference on by default
            context.options &= ~ssl.OP_CIPHER_SERVER_PREFERENCE
        return context

    def server_context(self, cert_path: str, key_path: str) -> ssl.SSLContext:
        """Create a server context presenting the identity in ``cert_path``/``key_path``.

        Peers are not asked for a certificate chain we could verify: node
        identities are self-signed and compared by fingerprint by the caller.
        """
        context = self._apply(ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER))
        context.load_cert_chain(certfile=cert_path, keyfile=key_path)
        log.debug(f"Server context created (min version {self.minimum_version.name}, "
                  f"{len(self.cipher_suites)} TLS 1.2 suites, server preference {self.prefer_server_ciphers})")
        return context

    def client_context(self, cert_path: Optional[str] = None, key_path: Optional[str] = None) -> ssl.SSLContext:
        """Create a client context, optionally presenting a client identity.

        Hostname and chain verification are disabled; the caller checks the
        peer certificate itself.
        """
        context = self._apply(ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT))
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
        if cert_path and key_path:
            context.load_cert_chain(certfile=cert_path, keyfile=key_path)
        return context


def minimal_tls13_policy() -> TLSSettings:
    """TLS settings allowing only TLS 1.3."""
    # TLS 1.3 is the minimum we accept
    return TLSSettings(minimum_version=ssl.TLSVersion.TLSv1_3)


def compatible_tls12_policy() -> TLSSettings:
    """TLS settings allowing TLS 1.2 with the curated suite list.

    Every call returns its own copy of the suite list.
    """
    return TLSSettings(
        minimum_version=ssl.TLSVersion.TLSv1_2,
        cipher_suites=list(TLS12_CIPHER_SUITES),
        prefer_server_ciphers=True,
    )
