from __future__ import annotations

import base64
import binascii
import copy
import logging
import secrets
from collections.abc import Callable
from typing import Any

from kubernetes.client import ApiException, CoreV1Api, CustomObjectsApi, V1ObjectMeta, V1Secret

from fluxsecret.src.config import ControllerOptions
from fluxsecret.src.fields import VirtualClusterInstance
from fluxsecret.src.kube import (
    ACCESS_KEY_RESOURCE,
    MANAGED_BY_LABEL,
    MANAGED_BY_VALUE,
    VCI_REF_ANNOTATION,
    CallContext,
    is_already_exists,
    is_not_found,
)
from fluxsecret.src.kubeconfig import render_template

TOKEN_BYTES = 48
TOKEN_DATA_KEY = "token"

VCLUSTER_LABEL = "loft.sh/vcluster"
INSTANCE_NAME_LABEL = "loft.sh/vcluster-instance-name"
INSTANCE_NAMESPACE_LABEL = "loft.sh/vcluster-instance-namespace"


def random_token() -> str:
    """Mint a bearer token: 48 random bytes, URL-safe base64 without padding."""
    return secrets.token_urlsafe(TOKEN_BYTES)


def access_key_name(vci_name: str) -> str:
    return f"loft-vcluster-{vci_name}"


def token_secret_name(prefix: str, vci_name: str) -> str:
    return f"{prefix}{vci_name}-ak"


def _decode(value: str | None) -> str:
    if not value:
        return ""
    try:
        return base64.b64decode(value, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return ""


class AccessKeyManager:
    """Owns the per-VCI bearer token, its Secret, and the matching AccessKey.

    A token is minted once per VCI and stored in a Secret in the controller
    namespace.  Later passes reuse it verbatim, so the AccessKey and every
    kubeconfig Secret keep pointing at the same credential until the token
    Secret itself is removed.  There is no automatic rotation.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        custom_api: CustomObjectsApi,
        options: ControllerOptions,
        token_factory: Callable[[], str] = random_token,
        logger: logging.Logger | None = None,
    ) -> None:
        self.core_api = core_api
        self.custom_api = custom_api
        self.options = options
        self.token_factory = token_factory
        self.logger = logger or logging.getLogger(__name__)

    def ensure_token(self, vci: VirtualClusterInstance, ctx: CallContext | None = None) -> str:
        """Return the VCI's token, minting and persisting one when none exists.

        The AccessKey is upserted on every call so scope and labels follow
        the VCI even when the token is reused.  The token Secret is only
        written when a new token was minted.
        """
        ctx = ctx or CallContext.background()
        token = self.read_token(vci.name, ctx)
        minted = not token
        if minted:
            token = self.token_factory()
            self.logger.info("Minted new access token for VCI %s", vci.key)

        self.upsert_access_key(vci, token, ctx)
        if minted:
            self.persist_token(vci, token, ctx)
        return token

    def read_token(self, vci_name: str, ctx: CallContext) -> str | None:
        try:
            secret = ctx.call(
                self.core_api.read_namespaced_secret,
                name=token_secret_name(self.options.secret_prefix, vci_name),
                namespace=self.options.controller_namespace,
            )
        except ApiException as exc:
            if is_not_found(exc):
                return None
            raise
        token = _decode((secret.data or {}).get(TOKEN_DATA_KEY))
        return token or None

    def access_key_labels(self, vci: VirtualClusterInstance) -> dict[str, str]:
        return {
            VCLUSTER_LABEL: "true",
            INSTANCE_NAME_LABEL: vci.name,
            INSTANCE_NAMESPACE_LABEL: vci.namespace,
        }

    def access_key_spec(self, vci: VirtualClusterInstance, token: str) -> dict[str, Any]:
        project = vci.project
        display_name = render_template(
            self.options.access_key_display_name_template,
            {"Name": vci.name, "Project": project, "Namespace": vci.namespace},
        )
        spec: dict[str, Any] = {
            "displayName": display_name,
            "key": token,
            "type": self.options.access_key_type,
            "scope": {
                "roles": [{"role": "vcluster"}],
                "virtualClusters": [{"project": project, "virtualCluster": vci.name}],
            },
            "groups": [
                f"loft:vcluster:{vci.namespace}:{vci.name}",
                "loft:system:vclusters",
            ],
        }
        if self.options.access_key_type == "User" and self.options.access_key_team:
            spec["team"] = self.options.access_key_team
        return spec

    def upsert_access_key(
        self, vci: VirtualClusterInstance, token: str, ctx: CallContext
    ) -> None:
        """Create the AccessKey, or overwrite its spec and merge in our labels."""
        resource = ACCESS_KEY_RESOURCE
        name = access_key_name(vci.name)
        spec = self.access_key_spec(vci, token)
        labels = self.access_key_labels(vci)

        try:
            existing = ctx.call(
                self.custom_api.get_cluster_custom_object,
                group=resource.group,
                version=resource.version,
                plural=resource.plural,
                name=name,
            )
        except ApiException as exc:
            if not is_not_found(exc):
                raise
            body = {
                "apiVersion": f"{resource.group}/{resource.version}",
                "kind": "AccessKey",
                "metadata": {"name": name, "labels": labels},
                "spec": spec,
            }
            ctx.call(
                self.custom_api.create_cluster_custom_object,
                group=resource.group,
                version=resource.version,
                plural=resource.plural,
                body=body,
            )
            self.logger.info("Created AccessKey %s for VCI %s", name, vci.key)
            return

        updated = copy.deepcopy(existing)
        metadata = updated.setdefault("metadata", {})
        merged_labels = dict(metadata.get("labels") or {})
        merged_labels.update(labels)
        if updated.get("spec") == spec and metadata.get("labels") == merged_labels:
            return
        metadata["labels"] = merged_labels
        updated["spec"] = spec
        ctx.call(
            self.custom_api.replace_cluster_custom_object,
            group=resource.group,
            version=resource.version,
            plural=resource.plural,
            name=name,
            body=updated,
        )
        self.logger.info("Updated AccessKey %s for VCI %s", name, vci.key)

    def persist_token(self, vci: VirtualClusterInstance, token: str, ctx: CallContext) -> None:
        """Store ``token`` in the VCI's token Secret.

        Losing a create race overwrites the token and the VCI reference on
        the existing Secret, so the AccessKey just written stays authoritative.
        """
        name = token_secret_name(self.options.secret_prefix, vci.name)
        namespace = self.options.controller_namespace
        encoded = base64.b64encode(token.encode("utf-8")).decode("ascii")
        body = V1Secret(
            metadata=V1ObjectMeta(
                name=name,
                namespace=namespace,
                labels={MANAGED_BY_LABEL: MANAGED_BY_VALUE},
                annotations={VCI_REF_ANNOTATION: vci.key},
            ),
            type="Opaque",
            data={TOKEN_DATA_KEY: encoded},
        )
        try:
            ctx.call(self.core_api.create_namespaced_secret, namespace=namespace, body=body)
            return
        except ApiException as exc:
            if not is_already_exists(exc):
                raise

        existing = ctx.call(self.core_api.read_namespaced_secret, name=name, namespace=namespace)
        existing.data = dict(existing.data or {})
        existing.data[TOKEN_DATA_KEY] = encoded
        existing.metadata.annotations = dict(existing.metadata.annotations or {})
        existing.metadata.annotations[VCI_REF_ANNOTATION] = vci.key
        ctx.call(
            self.core_api.replace_namespaced_secret, name=name, namespace=namespace, body=existing
        )
        self.logger.info("Token Secret %s/%s already existed; overwrote token", namespace, name)

    def delete_access_key(self, vci_name: str, ctx: CallContext | None = None) -> bool:
        """Delete the VCI's AccessKey.  Returns False when it was already gone."""
        ctx = ctx or CallContext.background()
        resource = ACCESS_KEY_RESOURCE
        try:
            ctx.call(
                self.custom_api.delete_cluster_custom_object,
                group=resource.group,
                version=resource.version,
                plural=resource.plural,
                name=access_key_name(vci_name),
            )
        except ApiException as exc:
            if is_not_found(exc):
                return False
            raise
        return True

    def delete_token_secret(self, vci_name: str, ctx: CallContext | None = None) -> bool:
        """Delete the VCI's token Secret.  Returns False when it was already gone."""
        ctx = ctx or CallContext.background()
        try:
            ctx.call(
                self.core_api.delete_namespaced_secret,
                name=token_secret_name(self.options.secret_prefix, vci_name),
                namespace=self.options.controller_namespace,
            )
        except ApiException as exc:
            if is_not_found(exc):
                return False
            raise
        return True
