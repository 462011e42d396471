from __future__ import annotations

import threading
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client import ApiException

from fluxsecret.src.kube import (
    CallContext,
    Cancelled,
    build_clients,
    is_already_exists,
    is_conflict,
    is_not_found,
    labels_selector,
    load_kube_configuration,
)


def test_load_kube_configuration_in_cluster() -> None:
    with (
        patch("fluxsecret.src.kube.config.load_incluster_config") as mock_incluster,
        patch("fluxsecret.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration()

    mock_incluster.assert_called_once()
    mock_kubeconfig.assert_not_called()


def test_load_kube_configuration_local_fallback() -> None:
    from kubernetes.config.config_exception import ConfigException

    with (
        patch(
            "fluxsecret.src.kube.config.load_incluster_config",
            side_effect=ConfigException("not in cluster"),
        ),
        patch("fluxsecret.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration()

    mock_kubeconfig.assert_called_once()


def test_build_clients_returns_tuple() -> None:
    with patch("fluxsecret.src.kube.client") as mock_client:
        mock_client.CoreV1Api.return_value = SimpleNamespace(name="core")
        mock_client.CustomObjectsApi.return_value = SimpleNamespace(name="custom")
        core, custom = build_clients()

    assert core.name == "core"
    assert custom.name == "custom"


def test_error_classification() -> None:
    assert is_not_found(ApiException(status=404))
    assert not is_not_found(ApiException(status=500))
    assert not is_not_found(ValueError("404"))
    assert is_conflict(ApiException(status=409))
    assert is_already_exists(ApiException(status=409))


def test_labels_selector_is_sorted() -> None:
    assert labels_selector({"b": "2", "a": "1"}) == "a=1,b=2"


def test_call_context_passes_remaining_time_as_request_timeout() -> None:
    fn = MagicMock(return_value="ok")
    ctx = CallContext(deadline=15.0, monotonic=lambda: 10.0)

    assert ctx.call(fn, name="x") == "ok"

    fn.assert_called_once_with(name="x", _request_timeout=5.0)


def test_call_context_without_deadline_adds_nothing() -> None:
    fn = MagicMock()

    CallContext.background().call(fn, name="x")

    fn.assert_called_once_with(name="x")


def test_call_context_refuses_after_stop() -> None:
    stop = threading.Event()
    ctx = CallContext(stop_event=stop)
    fn = MagicMock()

    ctx.call(fn)
    stop.set()
    with pytest.raises(Cancelled, match="cancelled"):
        ctx.call(fn)

    assert fn.call_count == 1


def test_call_context_refuses_after_deadline() -> None:
    with pytest.raises(Cancelled, match="deadline"):
        CallContext(deadline=1.0, monotonic=lambda: 1.0).check()


def test_call_context_caps_each_call_at_request_timeout() -> None:
    fn = MagicMock()
    ctx = CallContext(deadline=100.0, monotonic=lambda: 10.0, request_timeout=7.0)

    ctx.call(fn, name="x")

    fn.assert_called_once_with(name="x", _request_timeout=7.0)


def test_call_context_uses_remaining_time_when_shorter_than_request_timeout() -> None:
    fn = MagicMock()
    ctx = CallContext(deadline=12.0, monotonic=lambda: 10.0, request_timeout=7.0)

    ctx.call(fn)

    fn.assert_called_once_with(_request_timeout=2.0)


def test_call_context_request_timeout_without_deadline() -> None:
    fn = MagicMock()

    CallContext(request_timeout=3.0).call(fn)

    fn.assert_called_once_with(_request_timeout=3.0)
