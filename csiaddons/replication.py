"""Volume replication operations sent to a driver sidecar."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Iterable, Mapping, Protocol


class StatusCode(IntEnum):
    """Status codes a remote procedure call can fail with."""

    OK = 0
    CANCELLED = 1
    UNKNOWN = 2
    INVALID_ARGUMENT = 3
    DEADLINE_EXCEEDED = 4
    NOT_FOUND = 5
    ALREADY_EXISTS = 6
    PERMISSION_DENIED = 7
    RESOURCE_EXHAUSTED = 8
    FAILED_PRECONDITION = 9
    ABORTED = 10
    OUT_OF_RANGE = 11
    UNIMPLEMENTED = 12
    INTERNAL = 13
    UNAVAILABLE = 14
    DATA_LOSS = 15
    UNAUTHENTICATED = 16

    @property
    def label(self) -> str:
        return self.name.title().replace("_", "")


class RpcError(Exception):
    """A failed remote call, carrying its status code and message."""

    def __init__(self, code: StatusCode, message: str = "") -> None:
        super().__init__(message)
        self.code = code
        self.message = message

    def __str__(self) -> str:
        return f"rpc error: code = {self.code.label} desc = {self.message}"


class VolumeReplicationClient(Protocol):
    """The replication calls a driver sidecar offers."""

    def enable_volume_replication(
        self,
        volume_id: str,
        replication_id: str,
        secret_name: str,
        secret_namespace: str,
        parameters: Mapping[str, str],
    ) -> Any: ...

    def disable_volume_replication(
        self,
        volume_id: str,
        replication_id: str,
        secret_name: str,
        secret_namespace: str,
        parameters: Mapping[str, str],
    ) -> Any: ...

    def promote_volume(
        self,
        volume_id: str,
        replication_id: str,
        force: bool,
        secret_name: str,
        secret_namespace: str,
        parameters: Mapping[str, str],
    ) -> Any: ...

    def demote_volume(
        self,
        volume_id: str,
        replication_id: str,
        secret_name: str,
        secret_namespace: str,
        parameters: Mapping[str, str],
    ) -> Any: ...

    def resync_volume(
        self,
        volume_id: str,
        replication_id: str,
        force: bool,
        secret_name: str,
        secret_namespace: str,
        parameters: Mapping[str, str],
    ) -> Any: ...

    def get_volume_replication_info(
        self,
        volume_id: str,
        replication_id: str,
        secret_name: str,
        secret_namespace: str,
    ) -> Any: ...


@dataclass
class CommonRequestParameters:
    """Parameters shared by every replication operation."""

    volume_id: str
    replication: VolumeReplicationClient
    replication_id: str = ""
    parameters: dict[str, str] = field(default_factory=dict)
    secret_name: str = ""
    secret_namespace: str = ""


@dataclass
class Response:
    """What a replication operation returned, or the error it failed with."""

    response: Any = None
    error: BaseException | None = None

    def has_known_grpc_error(self, known_codes: Iterable[StatusCode]) -> bool:
        """Whether the error is a remote call error with one of the given codes."""
        if not isinstance(self.error, RpcError):
            return False
        return self.error.code in set(known_codes)


@dataclass
class Replication:
    """A single replication operation on one volume."""

    params: CommonRequestParameters
    force: bool = False

    def _call(self, method: str, *args: Any) -> Response:
        try:
            return Response(response=getattr(self.params.replication, method)(*args))
        except Exception as err:  # the driver may fail in any way; the caller decides
            return Response(error=err)

    def _common(self) -> tuple[str, str]:
        return self.params.volume_id, self.params.replication_id

    def _secrets(self) -> tuple[str, str, dict[str, str]]:
        p = self.params
        return p.secret_name, p.secret_namespace, p.parameters

    def enable(self) -> Response:
        return self._call("enable_volume_replication", *self._common(), *self._secrets())

    def disable(self) -> Response:
        return self._call("disable_volume_replication", *self._common(), *self._secrets())

    def promote(self) -> Response:
        return self._call("promote_volume", *self._common(), self.force, *self._secrets())

    def demote(self) -> Response:
        return self._call("demote_volume", *self._common(), *self._secrets())

    def resync(self) -> Response:
        return self._call("resync_volume", *self._common(), self.force, *self._secrets())

    def get_info(self) -> Response:
        return self._call(
            "get_volume_replication_info",
            *self._common(),
            self.params.secret_name,
            self.params.secret_namespace,
        )


def get_message_from_error(err: BaseException | None) -> str:
    """The message of a remote call error, or the text of any other error."""
    if err is None:
        return ""
    if isinstance(err, RpcError):
        return err.message
    return str(err)