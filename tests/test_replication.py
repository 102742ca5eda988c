import pytest

from csiaddons.replication import (
    CommonRequestParameters,
    Replication,
    Response,
    RpcError,
    StatusCode,
    get_message_from_error,
)


class FakeReplicationClient:
    def __init__(self, error=None):
        self.calls = []
        self.error = error

    def _record(self, name, *args):
        self.calls.append((name, args))
        if self.error is not None:
            raise self.error
        return {"op": name}

    def enable_volume_replication(self, *args):
        return self._record("enable", *args)

    def disable_volume_replication(self, *args):
        return self._record("disable", *args)

    def promote_volume(self, *args):
        return self._record("promote", *args)

    def demote_volume(self, *args):
        return self._record("demote", *args)

    def resync_volume(self, *args):
        return self._record("resync", *args)

    def get_volume_replication_info(self, *args):
        return self._record("info", *args)


def make_replication(client, force=False):
    params = CommonRequestParameters(
        volume_id="vol-1",
        replication=client,
        replication_id="rep-1",
        parameters={"k": "v"},
        secret_name="sec",
        secret_namespace="ns",
    )
    return Replication(params=params, force=force)


@pytest.mark.parametrize(
    "err,want",
    [
        (RpcError(StatusCode.INTERNAL, "failure"), "failure"),
        (ValueError("non grpc failure"), "non grpc failure"),
        (None, ""),
    ],
)
def test_get_message_from_error(err, want):
    assert get_message_from_error(err) == want


def test_enable_passes_parameters():
    client = FakeReplicationClient()
    resp = make_replication(client).enable()
    assert resp.error is None
    assert resp.response == {"op": "enable"}
    assert client.calls == [("enable", ("vol-1", "rep-1", "sec", "ns", {"k": "v"}))]


def test_disable_and_demote_pass_parameters():
    client = FakeReplicationClient()
    rep = make_replication(client)
    rep.disable()
    rep.demote()
    assert client.calls == [
        ("disable", ("vol-1", "rep-1", "sec", "ns", {"k": "v"})),
        ("demote", ("vol-1", "rep-1", "sec", "ns", {"k": "v"})),
    ]


def test_promote_and_resync_pass_force():
    client = FakeReplicationClient()
    rep = make_replication(client, force=True)
    rep.promote()
    rep.resync()
    assert client.calls == [
        ("promote", ("vol-1", "rep-1", True, "sec", "ns", {"k": "v"})),
        ("resync", ("vol-1", "rep-1", True, "sec", "ns", {"k": "v"})),
    ]


def test_get_info_has_no_parameters():
    client = FakeReplicationClient()
    resp = make_replication(client).get_info()
    assert resp.response == {"op": "info"}
    assert client.calls == [("info", ("vol-1", "rep-1", "sec", "ns"))]


def test_error_is_captured_in_response():
    err = RpcError(StatusCode.FAILED_PRECONDITION, "not ready")
    resp = make_replication(FakeReplicationClient(error=err)).promote()
    assert resp.error is err
    assert resp.response is None


def test_has_known_grpc_error_matches_code():
    resp = Response(error=RpcError(StatusCode.NOT_FOUND, "gone"))
    assert resp.has_known_grpc_error([StatusCode.NOT_FOUND]) is True
    assert resp.has_known_grpc_error([StatusCode.FAILED_PRECONDITION]) is False


def test_has_known_grpc_error_ignores_other_errors():
    assert Response(error=ValueError("x")).has_known_grpc_error([StatusCode.NOT_FOUND]) is False
    assert Response().has_known_grpc_error([StatusCode.NOT_FOUND]) is False


def test_rpc_error_text_includes_message():
    err = RpcError(StatusCode.INTERNAL, "failure")
    assert str(err).endswith("failure")
    assert err.code is StatusCode.INTERNAL