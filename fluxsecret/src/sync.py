from __future__ import annotations

import base64
import binascii
import logging
from dataclasses import dataclass

from kubernetes.client import ApiException, CoreV1Api, V1ObjectMeta, V1Secret

from fluxsecret.src.accesskeys import AccessKeyManager
from fluxsecret.src.config import ControllerOptions
from fluxsecret.src.fields import VirtualClusterInstance
from fluxsecret.src.kube import (
    FLUX_KUBECONFIG_LABEL,
    KUBECONFIG_HASH_ANNOTATION,
    MANAGED_BY_LABEL,
    MANAGED_BY_VALUE,
    VCI_NAME_LABEL,
    VCI_NAMESPACE_LABEL,
    CallContext,
    Cancelled,
    is_not_found,
    labels_selector,
)
from fluxsecret.src.kubeconfig import Kubeconfig


@dataclass(frozen=True)
class GarbageCollectionResult:
    """Outcome of cleaning up after a deleted VCI."""

    vci_key: str
    secrets_deleted: int
    access_key_deleted: bool
    token_secret_deleted: bool
    failed: int


def kubeconfig_secret_name(prefix: str, vci_name: str) -> str:
    return f"{prefix}{vci_name}-kubeconfig"


def identity_labels(vci_namespace: str, vci_name: str) -> dict[str, str]:
    """Labels that let a kubeconfig Secret be found again from the VCI key alone."""
    return {
        MANAGED_BY_LABEL: MANAGED_BY_VALUE,
        VCI_NAME_LABEL: vci_name,
        VCI_NAMESPACE_LABEL: vci_namespace,
    }


def _decode_bytes(value: str | None) -> bytes | None:
    if value is None:
        return None
    try:
        return base64.b64decode(value, validate=True)
    except binascii.Error:
        return None


class SecretSynchronizer:
    """Writes kubeconfig Secrets into target namespaces and removes them on VCI deletion.

    Writes are idempotent: a Secret whose stored bytes and fingerprint
    annotation already match the desired kubeconfig is left untouched, so
    repeated passes cost a single read per namespace.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        options: ControllerOptions,
        access_keys: AccessKeyManager,
        logger: logging.Logger | None = None,
    ) -> None:
        self.core_api = core_api
        self.options = options
        self.access_keys = access_keys
        self.logger = logger or logging.getLogger(__name__)

    def secret_name(self, vci_name: str) -> str:
        return kubeconfig_secret_name(self.options.secret_prefix, vci_name)

    def desired_labels(self, vci: VirtualClusterInstance) -> dict[str, str]:
        """Identity labels plus any VCI labels under a passthrough prefix.

        Passthrough labels never override the identity set.
        """
        labels = {
            key: value
            for key, value in vci.labels.items()
            if any(key.startswith(prefix) for prefix in self.options.passthrough_label_prefixes)
        }
        labels.update(identity_labels(vci.namespace, vci.name))
        labels[FLUX_KUBECONFIG_LABEL] = "true"
        return labels

    def upsert(
        self,
        vci: VirtualClusterInstance,
        namespace: str,
        kubeconfig: Kubeconfig,
        ctx: CallContext | None = None,
    ) -> bool:
        """Create or update the VCI's kubeconfig Secret in ``namespace``.

        Returns True when a write happened.  Content is compared byte for
        byte and the fingerprint annotation separately, so drift in either
        one triggers a rewrite of both together.
        """
        ctx = ctx or CallContext.background()
        name = self.secret_name(vci.name)
        key = self.options.secret_key
        encoded = base64.b64encode(kubeconfig.content).decode("ascii")
        labels = self.desired_labels(vci)

        try:
            existing = ctx.call(self.core_api.read_namespaced_secret, name=name, namespace=namespace)
        except ApiException as exc:
            if not is_not_found(exc):
                raise
            body = V1Secret(
                metadata=V1ObjectMeta(
                    name=name,
                    namespace=namespace,
                    labels=labels,
                    annotations={KUBECONFIG_HASH_ANNOTATION: kubeconfig.fingerprint},
                ),
                type="Opaque",
                data={key: encoded},
            )
            ctx.call(self.core_api.create_namespaced_secret, namespace=namespace, body=body)
            self.logger.info("Created kubeconfig Secret %s/%s for VCI %s", namespace, name, vci.key)
            return True

        stored = _decode_bytes((existing.data or {}).get(key))
        annotations = dict(existing.metadata.annotations or {})
        if stored == kubeconfig.content and (
            annotations.get(KUBECONFIG_HASH_ANNOTATION) == kubeconfig.fingerprint
        ):
            self.logger.debug("Kubeconfig Secret %s/%s is up to date", namespace, name)
            return False

        merged_labels = dict(existing.metadata.labels or {})
        merged_labels.update(labels)
        annotations[KUBECONFIG_HASH_ANNOTATION] = kubeconfig.fingerprint
        existing.metadata.labels = merged_labels
        existing.metadata.annotations = annotations
        existing.data = {key: encoded}
        ctx.call(
            self.core_api.replace_namespaced_secret, name=name, namespace=namespace, body=existing
        )
        self.logger.info("Updated kubeconfig Secret %s/%s for VCI %s", namespace, name, vci.key)
        return True

    def _delete_kubeconfig_secrets(
        self, vci_namespace: str, vci_name: str, ctx: CallContext
    ) -> tuple[int, int]:
        selector = labels_selector(identity_labels(vci_namespace, vci_name))
        secrets = ctx.call(self.core_api.list_secret_for_all_namespaces, label_selector=selector)
        deleted = 0
        failed = 0
        for secret in secrets.items or []:
            namespace = secret.metadata.namespace
            name = secret.metadata.name
            try:
                ctx.call(self.core_api.delete_namespaced_secret, name=name, namespace=namespace)
                deleted += 1
            except ApiException as exc:
                if is_not_found(exc):
                    continue
                failed += 1
                self.logger.warning(
                    "Failed to delete kubeconfig Secret %s/%s (status=%s)",
                    namespace,
                    name,
                    exc.status,
                )
        return deleted, failed

    def garbage_collect(
        self, vci_namespace: str, vci_name: str, ctx: CallContext | None = None
    ) -> GarbageCollectionResult:
        """Delete every artifact derived from a VCI that no longer exists.

        Each step runs even when an earlier one failed; failures are logged
        and counted rather than raised because the owner is already gone.
        Missing objects count as success, so repeated calls are no-ops.
        """
        ctx = ctx or CallContext.background()
        vci_key = f"{vci_namespace}/{vci_name}"
        secrets_deleted = 0
        access_key_deleted = False
        token_secret_deleted = False
        failed = 0

        try:
            secrets_deleted, failed = self._delete_kubeconfig_secrets(vci_namespace, vci_name, ctx)
        except Cancelled:
            raise
        except Exception:
            failed += 1
            self.logger.warning("Failed to list kubeconfig Secrets for VCI %s", vci_key, exc_info=True)

        try:
            access_key_deleted = self.access_keys.delete_access_key(vci_name, ctx)
        except Cancelled:
            raise
        except Exception:
            failed += 1
            self.logger.warning("Failed to delete AccessKey for VCI %s", vci_key, exc_info=True)

        try:
            token_secret_deleted = self.access_keys.delete_token_secret(vci_name, ctx)
        except Cancelled:
            raise
        except Exception:
            failed += 1
            self.logger.warning("Failed to delete token Secret for VCI %s", vci_key, exc_info=True)

        return GarbageCollectionResult(
            vci_key=vci_key,
            secrets_deleted=secrets_deleted,
            access_key_deleted=access_key_deleted,
            token_secret_deleted=token_secret_deleted,
            failed=failed,
        )
