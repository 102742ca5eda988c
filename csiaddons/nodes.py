"""Reconciler that connects to the sidecar described by a CSIAddonsNode."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable
from urllib.parse import urlsplit

from csiaddons.kube import (
    Client,
    Connection,
    ConnectionPool,
    NamespacedName,
    NotFoundError,
    ObjectMeta,
    Pod,
    Result,
    add_finalizer,
    remove_finalizer,
)

log = logging.getLogger(__name__)

CSI_ADDONS_NODE_FINALIZER = "csiaddons.openshift.io/csiaddonsnode"


class LegacyEndpointError(ValueError):
    """The endpoint is in the legacy <IP-address>:<port> format."""


class CSIAddonsNodeState(str, Enum):
    CONNECTED = "Connected"
    FAILED = "Failed"


@dataclass
class CSIAddonsNode:
    meta: ObjectMeta
    driver_name: str = ""
    endpoint: str = ""
    node_id: str = ""
    state: CSIAddonsNodeState | None = None
    message: str = ""


Connector = Callable[[str, str, str], Connection]


def _split_host_port(netloc: str) -> tuple[str, str]:
    hostport = netloc.rpartition("@")[2]
    if hostport.startswith("["):
        end = hostport.find("]")
        if end < 0:
            raise ValueError("missing ']' in host")
        host, rest = hostport[1:end], hostport[end + 1 :]
        if rest and not rest.startswith(":"):
            raise ValueError(f'invalid port "{rest}" after host')
        port = rest[1:]
    else:
        host, sep, port = hostport.rpartition(":")
        if not sep:
            host, port = hostport, ""
    if port and not port.isdigit():
        raise ValueError(f'invalid port ":{port}" after host')
    return host, port


def parse_endpoint(raw_url: str) -> tuple[str, str, str]:
    """Return (namespace, pod name, port) of a pod:// endpoint.

    Raises LegacyEndpointError for endpoints without a scheme.
    """
    if "://" not in raw_url:
        raise LegacyEndpointError("legacy formatted endpoint")
    try:
        parts = urlsplit(raw_url)
        hostname, port = _split_host_port(parts.netloc)
    except ValueError as err:
        raise ValueError(f'failed to parse endpoint "{raw_url}": {err}') from err
    if parts.scheme != "pod":
        raise ValueError(f'endpoint scheme "{parts.scheme}" not supported')
    labels = hostname.split(".")
    if len(labels) > 2:
        raise ValueError(f'hostname "{hostname}" is not in <pod>.<namespace> format')
    namespace = labels[1] if len(labels) == 2 else ""
    return namespace, labels[0], port


def validate_csi_addons_node_spec(node: CSIAddonsNode) -> None:
    """Raise ValueError if the driver name or endpoint is empty."""
    if not node.driver_name:
        raise ValueError("required parameter 'Name' in CSIAddonsNode.Spec.Driver is empty")
    if not node.endpoint:
        raise ValueError("required parameter 'EndPoint' in CSIAddonsNode.Spec.Driver is empty")


class CSIAddonsNodeReconciler:
    """Keeps the connection pool in step with CSIAddonsNode objects."""

    def __init__(self, client: Client, conn_pool: ConnectionPool, connect: Connector) -> None:
        self.client = client
        self.conn_pool = conn_pool
        self._connect = connect

    def reconcile(self, request: NamespacedName) -> Result:
        try:
            node = self.client.get(CSIAddonsNode, request)
        except NotFoundError:
            log.info("CSIAddonsNode resource not found")
            return Result()

        try:
            validate_csi_addons_node_spec(node)
        except ValueError as err:
            log.error("Failed to validate CSIAddonsNode parameters: %s", err)
            node.state = CSIAddonsNodeState.FAILED
            node.message = f"Failed to validate CSIAddonsNode parameters: {err}"
            self.client.update_status(node)
            return Result()

        key = f"{node.meta.namespace}/{node.meta.name}"
        if node.meta.is_deleting():
            log.info("Deleting connection %s", key)
            self.conn_pool.delete(key)
            remove_finalizer(self.client, node, CSI_ADDONS_NODE_FINALIZER)
            return Result()

        try:
            endpoint = self.resolve_endpoint(node.endpoint)
        except Exception:
            log.exception("Failed to resolve endpoint %r", node.endpoint)
            raise

        add_finalizer(self.client, node, CSI_ADDONS_NODE_FINALIZER)

        log.info("Connecting to sidecar at %s", endpoint)
        try:
            conn = self._connect(endpoint, node.node_id, node.driver_name)
        except Exception as err:
            log.error("Failed to establish connection with sidecar: %s", err)
            node.state = CSIAddonsNodeState.FAILED
            node.message = f"Failed to establish connection with sidecar: {err}"
            self.client.update_status(node)
            raise

        self.conn_pool.put(key, conn)
        log.info("Added connection %s to connection pool", key)
        node.state = CSIAddonsNodeState.CONNECTED
        node.message = "Successfully established connection with sidecar"
        self.client.update_status(node)
        return Result()

    def resolve_endpoint(self, raw_url: str) -> str:
        """Turn a pod:// endpoint into <pod-ip>:<port>; legacy endpoints pass through."""
        try:
            namespace, pod_name, port = parse_endpoint(raw_url)
        except LegacyEndpointError:
            return raw_url
        if not namespace:
            raise ValueError(f'failed to get namespace from endpoint "{raw_url}"')
        if not pod_name:
            raise ValueError(f'failed to get pod from endpoint "{raw_url}"')
        try:
            pod = self.client.get(Pod, NamespacedName(pod_name, namespace))
        except NotFoundError as err:
            raise NotFoundError(f"failed to get pod {namespace}/{pod_name}: {err}") from err
        if not pod.pod_ip:
            raise ValueError(f"pod {namespace}/{pod_name} does not have an IP-address")
        return f"{pod.pod_ip}:{port}"