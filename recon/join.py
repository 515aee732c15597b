"""Node join coordination: bootstrap tokens and the join handshake."""

from __future__ import annotations

import hashlib
import logging
import secrets
import ssl
import string
import subprocess
import threading
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

from k8s_executor.deployment_gen import ROLE_LABEL
from recon.cluster import ClusterSurface
from recon.errors import (
    Cancelled,
    HandshakeTimeout,
    TokenAlreadyUsed,
    TokenError,
    TokenExpired,
    TopologyError,
    TransientInfraError,
)
from recon.retry import Backoff, call_with_retry
from recon.state import JoinState, JoinToken, Node, NodeRole
from recon.topology import TopologyModel

logger = logging.getLogger(__name__)

_TOKEN_ALPHABET = string.ascii_lowercase + string.digits
_RETIRED_TOKEN_LIMIT = 4096


def generate_token() -> str:
    """Bootstrap token in kubeadm's `[a-z0-9]{6}.[a-z0-9]{16}` format."""
    token_id = "".join(secrets.choice(_TOKEN_ALPHABET) for _ in range(6))
    secret = "".join(secrets.choice(_TOKEN_ALPHABET) for _ in range(16))
    return f"{token_id}.{secret}"


def ca_cert_hash(pem: str) -> str:
    """sha256 pin of a PEM certificate, in `sha256:<hex>` form."""
    der = ssl.PEM_cert_to_DER_cert(pem)
    return "sha256:" + hashlib.sha256(der).hexdigest()


def ca_cert_hash_from_file(path: str) -> str:
    return ca_cert_hash(Path(path).read_text(encoding="ascii"))


@dataclass
class JoinResult:
    node_id: str
    role: NodeRole
    token: str
    ca_cert_hash: str
    api_endpoint: str
    expires_at: float

    @property
    def join_command(self) -> List[str]:
        cmd = [
            "kubeadm", "join", self.api_endpoint,
            "--token", self.token,
            "--discovery-token-ca-cert-hash", self.ca_cert_hash,
            "--node-name", self.node_id,
        ]
        if self.role == NodeRole.CONTROLLER:
            cmd.append("--control-plane")
        return cmd

    def to_dict(self) -> Dict[str, object]:
        return {
            "node_id": self.node_id,
            "role": self.role.value,
            "token": self.token,
            "ca_cert_hash": self.ca_cert_hash,
            "api_endpoint": self.api_endpoint,
            "expires_at": self.expires_at,
            "join_command": " ".join(self.join_command),
        }


@dataclass
class JoinOutcome:
    node_id: str
    state: JoinState
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.state == JoinState.READY


class JoinTransport(ABC):
    """Carries a JoinResult to its node out of band."""

    @abstractmethod
    def deliver(self, node: Node, result: JoinResult) -> None:
        raise NotImplementedError


class SSHJoinTransport(JoinTransport):
    """Runs `kubeadm join` on the node over ssh."""

    def __init__(
        self,
        user: str = "root",
        options: Optional[List[str]] = None,
        kubeadm_path: str = "kubeadm",
        timeout_s: float = 600.0,
        runner: Optional[Callable[..., subprocess.CompletedProcess]] = None,
    ) -> None:
        self.user = user
        self.options = list(options or [])
        self.kubeadm_path = kubeadm_path
        self.timeout_s = timeout_s
        self._run = runner or subprocess.run

    def deliver(self, node: Node, result: JoinResult) -> None:
        if not node.address:
            raise TopologyError(f"node {node.node_id} has no address to ssh to", node_id=node.node_id)
        remote = [self.kubeadm_path] + result.join_command[1:]
        cmd = ["ssh", *self.options, f"{self.user}@{node.address}", "sudo", *remote]
        try:
            self._run(cmd, check=True, capture_output=True, text=True, timeout=self.timeout_s)
        except subprocess.CalledProcessError as e:
            raise TransientInfraError(f"kubeadm join on {node.node_id} exited {e.returncode}: {(e.stderr or '').strip()}")
        except (subprocess.TimeoutExpired, OSError) as e:
            raise TransientInfraError(f"kubeadm join on {node.node_id} failed: {e}")
        logger.info(f"Delivered join command to {node.node_id} ({node.address})")


class JoinCoordinator:
    """
    Drives nodes from unjoined to ready through a token handshake.

    Tokens are single-use and bound to this controller's identity. At most one
    handshake runs per node; different nodes may join concurrently.
    """

    def __init__(
        self,
        topology: TopologyModel,
        cluster: ClusterSurface,
        controller_id: str,
        api_endpoint: str,
        ca_cert_hash: str,
        token_ttl_s: float = 900.0,
        handshake: Optional[Backoff] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.topology = topology
        self.cluster = cluster
        self.controller_id = controller_id
        self.api_endpoint = api_endpoint
        self.ca_cert_hash = ca_cert_hash
        self.token_ttl_s = token_ttl_s
        self.handshake = handshake or Backoff(attempts=5, base_delay_s=2.0, max_delay_s=30.0)
        self._clock = clock
        self._lock = threading.Lock()
        self._tokens: Dict[str, JoinToken] = {}
        self._active: Dict[str, str] = {}  # node_id -> outstanding token
        self._retired: Dict[str, JoinToken] = OrderedDict()  # spent tokens, oldest first
        self._node_locks: Dict[str, threading.Lock] = {}

    def _node_lock(self, node_id: str) -> threading.Lock:
        with self._lock:
            return self._node_locks.setdefault(node_id, threading.Lock())

    def request_join(self, node_id: str) -> JoinResult:
        """
        Issue a join token for a declared node and mark it joining.

        Raises:
            TopologyError: Unknown, decommissioned, or already joined node
        """
        node = self.topology.get(node_id)
        if node is None:
            raise TopologyError(f"node '{node_id}' is not declared in the topology", node_id=node_id)
        if node.decommissioned:
            raise TopologyError(f"node {node_id} is decommissioned", node_id=node_id)
        if node.join_state in (JoinState.READY, JoinState.UNREACHABLE):
            raise TopologyError(f"node {node_id} has already joined ({node.join_state.value})", node_id=node_id)

        with self._node_lock(node_id):
            self.topology.transition(
                node_id,
                JoinState.JOINING,
                reason="join requested",
                expected=(JoinState.UNJOINED, JoinState.FAILED, JoinState.JOINING),
            )
            now = self._clock()
            value = generate_token()
            token = JoinToken(value=value, node_id=node_id, issuer=self.controller_id, expires_at=now + self.token_ttl_s)
            with self._lock:
                previous = self._active.get(node_id)
                if previous and previous in self._tokens:
                    # a re-request supersedes the outstanding token
                    self._tokens[previous].expires_at = min(self._tokens[previous].expires_at, now)
                self._tokens[value] = token
                self._active[node_id] = value

        logger.info(f"Issued join token for {node_id}, expires in {self.token_ttl_s:.0f}s")
        return JoinResult(
            node_id=node_id,
            role=node.role,
            token=value,
            ca_cert_hash=self.ca_cert_hash,
            api_endpoint=self.api_endpoint,
            expires_at=token.expires_at,
        )

    def _claim(self, node_id: str, value: str) -> JoinToken:
        now = self._clock()
        with self._lock:
            token = self._tokens.get(value) or self._retired.get(value)
            if token is None or token.issuer != self.controller_id:
                raise TokenError(f"unknown join token for node {node_id}", node_id=node_id)
            if token.used:
                raise TokenAlreadyUsed(f"join token for {token.node_id} was already used", node_id=node_id)
            if token.node_id != node_id:
                raise TokenError(f"join token is bound to {token.node_id}, not {node_id}", node_id=node_id)
            revert = False
            if token.expired(now):
                if self._active.get(node_id) == value:
                    del self._active[node_id]
                    revert = True
                expired = True
            else:
                token.used = True
                self._active.pop(node_id, None)
                expired = False
        if expired:
            if revert:
                self._revert_expired(node_id)
            raise TokenExpired(f"join token for {node_id} expired", node_id=node_id)
        return token

    def _revert_expired(self, node_id: str) -> None:
        try:
            self.topology.transition(node_id, JoinState.UNJOINED, reason="join token expired", expected=(JoinState.JOINING,))
        except TopologyError as e:
            logger.debug(f"Node {node_id} not reverted after token expiry: {e}")

    def _handshake(self, node_id: str) -> None:
        health = self.cluster.read_node(node_id)
        if health is None:
            raise HandshakeTimeout(f"node {node_id} has not registered with the API server")
        if not health.ready:
            raise HandshakeTimeout(f"node {node_id} registered but is not Ready")

    def complete_join(self, node_id: str, token: str, cancel: Optional[threading.Event] = None) -> Node:
        """
        Validate `token` and finish the handshake for `node_id`.

        Returns:
            The node, now ready

        Raises:
            TokenError / TokenAlreadyUsed / TokenExpired: token rejected
            HandshakeTimeout: node never became Ready; node is now failed
            Cancelled: cancellation requested mid-handshake; node is now failed
        """
        with self._node_lock(node_id):
            self._claim(node_id, token)
            node = self.topology.get(node_id)
            try:
                call_with_retry(
                    lambda: self._handshake(node_id),
                    self.handshake,
                    cancel=cancel,
                    describe=f"join handshake for {node_id}",
                )
                call_with_retry(
                    lambda: self.cluster.label_node(node_id, {ROLE_LABEL: node.role.value}),
                    self.handshake,
                    cancel=cancel,
                    describe=f"labeling {node_id}",
                )
            except Cancelled:
                self.topology.transition(node_id, JoinState.FAILED, reason="join cancelled")
                raise
            except TransientInfraError as e:
                self.topology.transition(node_id, JoinState.FAILED, reason=f"handshake failed: {e}")
                if isinstance(e, HandshakeTimeout):
                    raise
                raise HandshakeTimeout(f"join handshake for {node_id} failed: {e}", attempts=e.attempts)

            self.topology.transition(node_id, JoinState.READY, reason="handshake complete")
            self.topology.record_heartbeat(node_id, self._clock())
            return self.topology.get(node_id)

    def expire_stale(self) -> List[str]:
        """
        Invalidate expired outstanding tokens and return their nodes to unjoined.

        Used and expired tokens leave the live table for a bounded retired
        record, which still answers replays with TokenAlreadyUsed/TokenExpired.
        """
        now = self._clock()
        with self._lock:
            stale = [node_id for node_id, value in self._active.items() if self._tokens[value].expired(now)]
            for node_id in stale:
                del self._active[node_id]
            spent = [value for value, token in self._tokens.items() if token.used or token.expired(now)]
            for value in spent:
                self._retired[value] = self._tokens.pop(value)
            while len(self._retired) > _RETIRED_TOKEN_LIMIT:
                self._retired.popitem(last=False)
        if spent:
            logger.debug(f"Retired {len(spent)} spent join tokens")
        for node_id in stale:
            self._revert_expired(node_id)
        return stale

    def join_all(
        self,
        transport: JoinTransport,
        node_ids: Optional[Iterable[str]] = None,
        cancel: Optional[threading.Event] = None,
        delivery: Optional[Backoff] = None,
    ) -> Dict[str, JoinOutcome]:
        """
        Join nodes concurrently, one thread per node.

        Args:
            transport: Delivers each JoinResult to its node
            node_ids: Nodes to join; defaults to every unjoined, non-decommissioned node
            cancel: Optional cancellation signal shared by all handshakes
            delivery: Retry schedule for transport delivery

        Returns:
            node_id -> JoinOutcome
        """
        if node_ids is None:
            node_ids = [
                n.node_id for n in self.topology.list_nodes(include_decommissioned=False)
                if n.join_state == JoinState.UNJOINED
            ]
        delivery = delivery or Backoff(attempts=3, base_delay_s=5.0, max_delay_s=30.0)
        outcomes: Dict[str, JoinOutcome] = {}
        outcomes_lock = threading.Lock()

        def _join(node_id: str) -> None:
            try:
                result = self.request_join(node_id)
                node = self.topology.get(node_id)
                call_with_retry(
                    lambda: transport.deliver(node, result),
                    delivery,
                    cancel=cancel,
                    describe=f"join delivery to {node_id}",
                )
                joined = self.complete_join(node_id, result.token, cancel=cancel)
                outcome = JoinOutcome(node_id=node_id, state=joined.join_state)
            except (TransientInfraError, Cancelled) as e:
                current = self.topology.get(node_id)
                if current is not None and current.join_state == JoinState.JOINING:
                    self.topology.transition(node_id, JoinState.FAILED, reason=str(e))
                    current = self.topology.get(node_id)
                outcome = JoinOutcome(node_id=node_id, state=current.join_state if current else JoinState.FAILED, error=str(e))
            except (TokenError, TopologyError) as e:
                current = self.topology.get(node_id)
                outcome = JoinOutcome(node_id=node_id, state=current.join_state if current else JoinState.FAILED, error=str(e))
            with outcomes_lock:
                outcomes[node_id] = outcome

        threads = [threading.Thread(target=_join, args=(node_id,), name=f"join-{node_id}", daemon=True) for node_id in node_ids]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        ready = sum(1 for o in outcomes.values() if o.ok)
        logger.info(f"Join pass finished: {ready}/{len(outcomes)} nodes ready")
        return outcomes
