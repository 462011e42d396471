from __future__ import annotations

import base64
import binascii
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

from kubernetes.client import ApiException, CoreV1Api, CustomObjectsApi

from fluxsecret.src.accesskeys import AccessKeyManager
from fluxsecret.src.config import ControllerOptions
from fluxsecret.src.fields import VirtualClusterInstance
from fluxsecret.src.kube import VCI_RESOURCE, CallContext, Cancelled, is_not_found
from fluxsecret.src.kubeconfig import ServerVars, build_kubeconfig, render_server_url
from fluxsecret.src.namespaces import resolve_namespaces
from fluxsecret.src.sync import GarbageCollectionResult, SecretSynchronizer


class ReconcileError(RuntimeError):
    """A reconcile pass failed at ``step``; the key should be redelivered later."""

    def __init__(self, step: str, cause: BaseException) -> None:
        super().__init__(f"{step}: {cause}")
        self.step = step
        self.cause = cause


@contextmanager
def _step(step: str) -> Iterator[None]:
    try:
        yield
    except (Cancelled, ReconcileError):
        raise
    except Exception as exc:
        raise ReconcileError(step, exc) from exc


@dataclass(frozen=True)
class ReconcileResult:
    """What a single pass did for one VCI key."""

    vci_key: str
    action: str
    namespaces: tuple[str, ...] = ()
    secrets_written: int = 0
    garbage: GarbageCollectionResult | None = field(default=None)


class VciReconciler:
    """Per-VCI control loop.

    One call to :meth:`reconcile` handles one ``(namespace, name)`` key:

    * VCI gone: delete every derived artifact and report success.
    * VCI present but not ``Ready``: do nothing.
    * VCI ``Ready``: ensure the token and AccessKey, render the kubeconfig
      once, and upsert it into each resolved target namespace in turn.

    Any raised exception means "try this key again later".  Callers must not
    run two passes for the same key concurrently.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        custom_api: CustomObjectsApi,
        options: ControllerOptions,
        access_keys: AccessKeyManager | None = None,
        synchronizer: SecretSynchronizer | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.core_api = core_api
        self.custom_api = custom_api
        self.options = options
        self.logger = logger or logging.getLogger(__name__)
        self.access_keys = access_keys or AccessKeyManager(core_api, custom_api, options)
        self.synchronizer = synchronizer or SecretSynchronizer(
            core_api, options, self.access_keys
        )

    def _get_vci(self, namespace: str, name: str, ctx: CallContext) -> dict[str, Any] | None:
        resource = VCI_RESOURCE
        try:
            return ctx.call(
                self.custom_api.get_namespaced_custom_object,
                group=resource.group,
                version=resource.version,
                namespace=namespace,
                plural=resource.plural,
                name=name,
            )
        except ApiException as exc:
            if is_not_found(exc):
                return None
            raise

    def _read_ca(self, ctx: CallContext) -> bytes | None:
        """Fetch the optional custom CA.  Any failure yields a kubeconfig without it."""
        if not self.options.ca_configured:
            return None
        namespace = self.options.ca_secret_namespace
        name = self.options.ca_secret_name
        try:
            secret = ctx.call(self.core_api.read_namespaced_secret, name=name, namespace=namespace)
        except ApiException as exc:
            if is_not_found(exc):
                self.logger.debug("CA Secret %s/%s not found", namespace, name)
            else:
                self.logger.warning(
                    "Failed to read CA Secret %s/%s (status=%s); continuing without custom CA",
                    namespace,
                    name,
                    exc.status,
                )
            return None

        raw = (secret.data or {}).get(self.options.ca_secret_key)
        if not raw:
            self.logger.warning(
                "CA Secret %s/%s has no key %s; continuing without custom CA",
                namespace,
                name,
                self.options.ca_secret_key,
            )
            return None
        try:
            return base64.b64decode(raw, validate=True)
        except binascii.Error:
            self.logger.warning("CA Secret %s/%s holds invalid base64 data", namespace, name)
            return None

    def reconcile(
        self, namespace: str, name: str, ctx: CallContext | None = None
    ) -> ReconcileResult:
        ctx = ctx or CallContext.background()
        vci_key = f"{namespace}/{name}"

        with _step("get vci"):
            obj = self._get_vci(namespace, name, ctx)

        if obj is None:
            garbage = self.synchronizer.garbage_collect(namespace, name, ctx)
            self.logger.info(
                "VCI %s deleted; removed %d kubeconfig Secret(s) "
                "(access key deleted=%s, token deleted=%s, failures=%d)",
                vci_key,
                garbage.secrets_deleted,
                garbage.access_key_deleted,
                garbage.token_secret_deleted,
                garbage.failed,
            )
            return ReconcileResult(vci_key=vci_key, action="garbage-collected", garbage=garbage)

        with _step("read vci"):
            vci = VirtualClusterInstance.from_object(obj)

        if not vci.ready:
            self.logger.debug("VCI %s not Ready yet (phase=%s)", vci_key, vci.phase)
            return ReconcileResult(vci_key=vci_key, action="skipped")

        with _step("ensure access key"):
            token = self.access_keys.ensure_token(vci, ctx)

        with _step("render server url"):
            server = render_server_url(
                self.options.server_template,
                ServerVars(
                    domain=self.options.loft_domain,
                    project=vci.project,
                    namespace=vci.namespace,
                    name=vci.name,
                ),
            )

        ca_pem = self._read_ca(ctx)

        with _step("build kubeconfig"):
            kubeconfig = build_kubeconfig(server, vci.name, token, ca_pem)

        with _step("resolve namespaces"):
            targets = resolve_namespaces(
                self.core_api, self.options.flux_namespace_patterns, ctx
            )

        written = 0
        for target in targets:
            with _step(f"upsert secret in {target}"):
                if self.synchronizer.upsert(vci, target, kubeconfig, ctx):
                    written += 1

        self.logger.info(
            "Reconciled VCI %s into namespaces %s (%d Secret write(s))",
            vci_key,
            ",".join(targets),
            written,
        )
        return ReconcileResult(
            vci_key=vci_key,
            action="synced",
            namespaces=tuple(targets),
            secrets_written=written,
        )
