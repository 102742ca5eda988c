"""Reconciler that fences or unfences cluster networks through a driver."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from csiaddons.kube import (
    Client,
    ConnectionPool,
    NamespacedName,
    NotFoundError,
    ObjectMeta,
    Result,
    add_finalizer,
    remove_finalizer,
)
from csiaddons.replication import get_message_from_error

log = logging.getLogger(__name__)

NETWORK_FENCE_FINALIZER = "csiaddons.openshift.io/network-fence"
NETWORK_FENCE_CAPABILITY = "NETWORK_FENCE"

FENCE_OPERATION_SUCCESSFUL_MESSAGE = "fencing operation successful"
UNFENCE_OPERATION_SUCCESSFUL_MESSAGE = "unfencing operation successful"


class FenceState(str, Enum):
    FENCED = "Fenced"
    UNFENCED = "Unfenced"


class FencingOperationResult(str, Enum):
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"


@dataclass
class NetworkFence:
    meta: ObjectMeta
    driver: str = ""
    cidrs: list[str] | None = None
    fence_state: FenceState = FenceState.FENCED
    secret_name: str = ""
    secret_namespace: str = ""
    parameters: dict[str, str] = field(default_factory=dict)
    result: FencingOperationResult | None = None
    message: str = ""


@dataclass
class NetworkFenceRequest:
    parameters: dict[str, str]
    secret_name: str
    secret_namespace: str
    cidrs: list[str]


def validate_network_fence_spec(fence: NetworkFence | None) -> None:
    """Raise ValueError if the fence or its driver or CIDRs are missing."""
    if fence is None:
        raise ValueError("NetworkFence resource is empty")
    if not fence.driver:
        raise ValueError("required parameter driver is not specified")
    if fence.cidrs is None:
        raise ValueError("required parameter cidrs is not specified")


class NetworkFenceReconciler:
    """Brings NetworkFence objects to their requested fence state.

    Fence clients are the ``client`` of a pool connection and must offer
    ``fence_cluster_network(request, timeout)`` and
    ``unfence_cluster_network(request, timeout)``; ``timeout`` is in seconds.
    """

    def __init__(self, client: Client, conn_pool: ConnectionPool, timeout: float) -> None:
        self.client = client
        self.conn_pool = conn_pool
        self.timeout = timeout

    def reconcile(self, request: NamespacedName) -> Result:
        try:
            fence = self.client.get(NetworkFence, request)
        except NotFoundError:
            log.info("NetworkFence resource not found or deleted")
            return Result()

        try:
            validate_network_fence_spec(fence)
        except ValueError as err:
            log.error("failed to validate NetworkFence spec: %s", err)
            fence.result = FencingOperationResult.FAILED
            fence.message = f"Failed to validate Networkfence parameters: {get_message_from_error(err)}"
            self.client.update_status(fence)
            return Result()

        fence_client = self.get_network_fence_client(fence.driver, "")

        if fence.meta.is_deleting():
            if NETWORK_FENCE_FINALIZER in fence.meta.finalizers:
                remove_finalizer(self.client, fence, NETWORK_FENCE_FINALIZER)
            log.info("NetworkFence object is terminated, skipping reconciliation")
            return Result()

        verb = "FenceClusterNetwork" if fence.fence_state == FenceState.FENCED else "UnFenceClusterNetwork"
        log.info("%s Request for %s (driver %s, cidrs %s)", verb, request, fence.driver, fence.cidrs)

        try:
            add_finalizer(self.client, fence, NETWORK_FENCE_FINALIZER)
            self._send_request(fence, fence_client)
        except Exception as err:
            log.error("failed to fence cluster network: %s", err)
            try:
                self._update_status(fence, FencingOperationResult.FAILED, str(err))
            except Exception as status_err:
                log.error("failed to update status: %s", status_err)
            raise

        if fence.fence_state == FenceState.FENCED:
            success = FENCE_OPERATION_SUCCESSFUL_MESSAGE
        elif fence.fence_state == FenceState.UNFENCED:
            success = UNFENCE_OPERATION_SUCCESSFUL_MESSAGE
        else:
            success = ""
        self._update_status(fence, FencingOperationResult.SUCCEEDED, success)
        return Result()

    def _send_request(self, fence: NetworkFence, fence_client: Any) -> None:
        request = NetworkFenceRequest(
            parameters=dict(fence.parameters),
            secret_name=fence.secret_name,
            secret_namespace=fence.secret_namespace,
            cidrs=list(fence.cidrs or []),
        )
        if fence.fence_state == FenceState.FENCED:
            fence_client.fence_cluster_network(request, timeout=self.timeout)
            log.info("FenceClusterNetwork Request Succeeded")
        else:
            fence_client.unfence_cluster_network(request, timeout=self.timeout)
            log.info("UnFenceClusterNetwork Request Succeeded")

    def _update_status(self, fence: NetworkFence, result: FencingOperationResult, message: str) -> None:
        fence.result = result
        fence.message = message
        self.client.update_status(fence)

    def get_network_fence_client(self, driver_name: str, node_id: str) -> Any:
        """The client of a connection whose driver offers network fencing."""
        for conn in self.conn_pool.get_by_node_id(driver_name, node_id).values():
            for cap in conn.capabilities:
                if cap.network_fence == NETWORK_FENCE_CAPABILITY:
                    return conn.client
        raise LookupError(f"no connections for driver: {driver_name}")