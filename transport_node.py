#!/usr/bin/env python3
"""
Transport node: identity setup plus a thread-per-connection accept loop.

The node loads (or issues) its self-signed identity, builds the server TLS
context from the configured policy and listens on a single port through a
``DowngradingListener``. Every accepted connection, TLS or plaintext, is
handed to its own handler thread.

Usage:
    python transport_node.py issue-cert --cert-dir certs --common-name node1
    python transport_node.py serve --port 22000
"""

import os
import sys
import signal
import socket
import logging
import argparse
import threading
from typing import Callable, List, Optional

from downgrading_listener import DowngradingListener
from log_config import setup_logger
from node_config import NodeConfig
from tls_identity import IdentityError, KeyKind, issue_certificate, load_or_issue
from tls_policy import TLSSettings, compatible_tls12_policy, minimal_tls13_policy

log = logging.getLogger(__name__)

# Poll interval of the accept loop, so stop() is noticed without closing under it
ACCEPT_POLL_INTERVAL = 0.5

# Idle connections are dropped by the echo handler after this many seconds
ECHO_IDLE_TIMEOUT = 300.0

Handler = Callable[[object, object], None]


def echo_handler(conn, address):
    """Send every received byte back until the peer closes."""
    conn.settimeout(ECHO_IDLE_TIMEOUT)
    while True:
        data = conn.recv(4096)
        if not data:
            break
        conn.sendall(data)
    log.debug(f"Echo session with {address} finished")


class TransportNode:
    """A listening node serving TLS and plaintext on one port.

    Args:
        config: Node settings
        handler: Called as ``handler(connection, address)`` in a dedicated
                 thread for each connection; the connection is closed when
                 it returns
    """

    def __init__(self, config: NodeConfig, handler: Optional[Handler] = None):
        self.config = config
        self.handler = handler or echo_handler
        self.identity = None
        self.listener: Optional[DowngradingListener] = None
        self._running = threading.Event()
        self._accept_thread: Optional[threading.Thread] = None
        self._workers: List[threading.Thread] = []
        self._workers_lock = threading.Lock()

    def policy(self) -> TLSSettings:
        if self.config.allow_tls12:
            return compatible_tls12_policy()
        return minimal_tls13_policy()

    @property
    def address(self):
        """Address the node is bound to."""
        if self.listener is None:
            raise RuntimeError("node is not started")
        return self.listener.getsockname()

    def start(self):
        """Set up the identity, bind the listener and start accepting.

        Raises:
            IdentityError: If no identity can be loaded or issued
            OSError: If the listening socket cannot be bound
        """
        os.makedirs(self.config.cert_dir, exist_ok=True)
        self.identity = load_or_issue(
            self.config.cert_path,
            self.config.key_path,
            self.config.common_name,
            self.config.lifetime_days,
            renew_within_days=self.config.renew_within_days,
        )
        context = self.policy().server_context(self.identity.cert_path, self.identity.key_path)

        sock = socket.create_server((self.config.host, self.config.port))
        sock.settimeout(ACCEPT_POLL_INTERVAL)
        self.listener = DowngradingListener(sock, context, sniff_timeout=self.config.sniff_timeout)

        self._running.set()
        self._accept_thread = threading.Thread(target=self._accept_loop, name="transport-accept", daemon=True)
        self._accept_thread.start()
        log.info(f"Node {self.identity.common_name} ({self.identity.fingerprint}) listening on {self.address}")

    def _accept_loop(self):
        while self._running.is_set():
            try:
                conn, address = self.listener.accept()
            except socket.timeout:
                continue
            except OSError as e:
                if self._running.is_set():
                    log.error(f"Accept failed, stopping accept loop: {e}", exc_info=True)
                break

            worker = threading.Thread(target=self._serve, args=(conn, address),
                                      name=f"transport-conn-{address}", daemon=True)
            with self._workers_lock:
                self._workers = [w for w in self._workers if w.is_alive()]
                self._workers.append(worker)
            worker.start()

    def _serve(self, conn, address):
        try:
            self.handler(conn, address)
        except OSError as e:
            log.warning(f"Connection from {address} failed: {e}")
        except Exception as e:
            log.error(f"Handler error for {address}: {e}", exc_info=True)
        finally:
            conn.close()

    def stop(self, timeout: float = 5.0):
        """Stop accepting, close the listener and wait for handlers to finish."""
        self._running.clear()
        if self._accept_thread is not None:
            self._accept_thread.join(timeout)
            self._accept_thread = None
        if self.listener is not None:
            self.listener.close()
        with self._workers_lock:
            workers, self._workers = self._workers, []
        for worker in workers:
            worker.join(timeout)
        log.info("Node stopped")

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, *args):
        self.stop()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Destroyer P2P transport node")
    parser.add_argument("--log-level", default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"])
    parser.add_argument("--log-dir", help="Directory for transport.log (default: $P2P_LOG_DIR or logs)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    issue = subparsers.add_parser("issue-cert", help="Issue a new self-signed node identity")
    issue.add_argument("--cert-dir", help="Where cert.pem and key.pem are written")
    issue.add_argument("--common-name", help="Certificate common name")
    issue.add_argument("--lifetime-days", type=int, help="Validity period in days")
    issue.add_argument("--key-type", choices=[kind.value for kind in KeyKind], default=KeyKind.EC_P384.value)

    serve = subparsers.add_parser("serve", help="Run an echo node accepting TLS and plaintext")
    serve.add_argument("--host", help="Listen address")
    serve.add_argument("--port", type=int, help="Listen port")
    serve.add_argument("--cert-dir", help="Directory holding cert.pem and key.pem")
    serve.add_argument("--common-name", help="Certificate common name")
    serve.add_argument("--allow-tls12", action="store_true", default=None,
                       help="Accept TLS 1.2 with the curated suite list")
    serve.add_argument("--sniff-timeout", type=float, help="Seconds to wait for a connection's first byte")
    return parser


def _apply_overrides(config: NodeConfig, args: argparse.Namespace) -> NodeConfig:
    for field_name in ("host", "port", "cert_dir", "common_name", "lifetime_days",
                       "allow_tls12", "sniff_timeout", "log_dir"):
        value = getattr(args, field_name, None)
        if value is not None:
            setattr(config, field_name, value)
    return config


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    try:
        config = _apply_overrides(NodeConfig.from_env(), args)
    except ValueError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2

    setup_logger(getattr(logging, args.log_level), config.log_dir)

    if args.command == "issue-cert":
        os.makedirs(config.cert_dir, exist_ok=True)
        try:
            identity = issue_certificate(config.cert_path, config.key_path, config.common_name,
                                         config.lifetime_days, KeyKind(args.key_type))
        except IdentityError as e:
            log.critical(f"Could not issue node identity: {e}")
            return 1
        print(identity.fingerprint)
        return 0

    node = TransportNode(config)
    try:
        node.start()
    except IdentityError as e:
        log.critical(f"Could not establish node identity: {e}")
        return 1
    except OSError as e:
        log.critical(f"Could not listen on {config.host}:{config.port}: {e}")
        return 1

    stop_event = threading.Event()
    signal.signal(signal.SIGTERM, lambda signum, frame: stop_event.set())
    try:
        while not stop_event.wait(1.0):
            pass
    except KeyboardInterrupt:
        log.info("Interrupted")
    finally:
        node.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())
