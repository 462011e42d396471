from __future__ import annotations

import base64
import json
from collections.abc import Mapping
from dataclasses import dataclass
from hashlib import sha256
from string import Template
from typing import Any


class TemplateRenderError(ValueError):
    """Raised when a configured template cannot be rendered."""


@dataclass(frozen=True)
class ServerVars:
    """Placeholders available to the server URL template."""

    domain: str
    project: str
    namespace: str
    name: str

    def as_mapping(self) -> dict[str, str]:
        return {
            "Domain": self.domain,
            "Project": self.project,
            "Namespace": self.namespace,
            "Name": self.name,
        }


@dataclass(frozen=True)
class Kubeconfig:
    """Serialized kubeconfig bytes and their SHA-256 fingerprint."""

    content: bytes
    fingerprint: str


def render_template(template: str, variables: Mapping[str, str]) -> str:
    """Render a ``string.Template`` strictly.

    Unknown placeholders and stray ``$`` characters are errors; a template
    never renders to a partially substituted string.  Go-style ``{{ .Name }}``
    actions are rejected rather than passed through verbatim.
    """
    if "{{" in template:
        raise TemplateRenderError(
            f"template {template!r} uses {{{{ }}}} actions; use ${{Name}} placeholders instead"
        )
    try:
        return Template(template).substitute(variables)
    except KeyError as exc:
        raise TemplateRenderError(f"unknown template variable {exc.args[0]!r} in {template!r}") from exc
    except ValueError as exc:
        raise TemplateRenderError(f"invalid template {template!r}: {exc}") from exc


def render_server_url(template: str, variables: ServerVars) -> str:
    url = render_template(template, variables.as_mapping())
    if not url.strip():
        raise TemplateRenderError(f"server template {template!r} rendered an empty URL")
    return url


def fingerprint(content: bytes) -> str:
    """Return the lowercase hex SHA-256 digest of ``content``."""
    return sha256(content).hexdigest()


def build_kubeconfig(server: str, name: str, token: str, ca_pem: bytes | None = None) -> Kubeconfig:
    """Build a single-cluster, single-context, single-user kubeconfig.

    The document is JSON (a YAML subset, accepted by client-go and Flux) with
    a fixed key order and compact separators, so identical inputs always yield
    identical bytes and therefore identical fingerprints.  TLS settings are
    omitted entirely when no CA is supplied.
    """
    cluster: dict[str, Any] = {"server": server}
    if ca_pem:
        cluster["certificate-authority-data"] = base64.b64encode(ca_pem).decode("ascii")

    document = {
        "apiVersion": "v1",
        "kind": "Config",
        "clusters": [{"name": name, "cluster": cluster}],
        "contexts": [{"name": name, "context": {"cluster": name, "user": name}}],
        "current-context": name,
        "users": [{"name": name, "user": {"token": token}}],
    }
    content = json.dumps(document, separators=(",", ":")).encode("utf-8")
    return Kubeconfig(content=content, fingerprint=fingerprint(content))
