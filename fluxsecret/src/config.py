from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

DEFAULT_SERVER_TEMPLATE = (
    "https://${Domain}/kubernetes/project/${Project}/virtualcluster/${Name}"
)
ACCESS_KEY_TYPES = frozenset({"User", "Other"})


class ConfigError(RuntimeError):
    """Raised when the controller configuration is invalid."""


@dataclass(frozen=True)
class ControllerOptions:
    """Immutable controller configuration, constructed once at startup.

    Every component receives this object explicitly; nothing in the
    reconcile path reads the environment on its own.

    Attributes:
        label_selector: Admission selector for VirtualClusterInstances.
        secret_key: ``Secret.data`` key holding the kubeconfig.
        secret_prefix: Prefix for kubeconfig and token Secret names.
        server_template: ``string.Template`` for the API server URL
            (placeholders ``Domain``, ``Project``, ``Namespace``, ``Name``).
        loft_domain: Value substituted for ``${Domain}``.
        ca_secret_namespace / ca_secret_name / ca_secret_key: Optional
            location of a PEM-encoded CA embedded in every kubeconfig.
        flux_namespace_patterns: Exact names or shell globs of target namespaces.
        controller_namespace: Namespace holding the per-VCI token Secrets.
        passthrough_label_prefixes: VCI label prefixes copied to kubeconfig Secrets.
        access_key_type / access_key_team: AccessKey ``spec.type`` and team.
        access_key_display_name_template: ``string.Template`` for
            ``spec.displayName`` (placeholders ``Name``, ``Project``, ``Namespace``).
        workers: Number of reconcile worker threads.
        reconcile_timeout_seconds: Deadline for one reconcile pass.
        request_timeout_seconds: Upper bound on any single API call.
    """

    label_selector: str = "vcluster.com/import-fluxcd=true"
    secret_key: str = "value"
    secret_prefix: str = "vci-"
    server_template: str = DEFAULT_SERVER_TEMPLATE
    loft_domain: str = "beta.us.demo.dev"
    ca_secret_namespace: str = ""
    ca_secret_name: str = ""
    ca_secret_key: str = "ca.pem"
    flux_namespace_patterns: tuple[str, ...] = ("flux-system",)
    controller_namespace: str = "vci-flux-secret-controller"
    passthrough_label_prefixes: tuple[str, ...] = ("flux-app/",)
    access_key_type: str = "User"
    access_key_team: str = "loft-admins"
    access_key_display_name_template: str = "flux-${Name}"
    workers: int = 2
    reconcile_timeout_seconds: int = 120
    request_timeout_seconds: int = 10

    @property
    def ca_configured(self) -> bool:
        return bool(self.ca_secret_namespace and self.ca_secret_name)


def parse_list(value: str | None) -> tuple[str, ...]:
    """Split a comma-separated value, dropping blanks."""
    if not value:
        return ()
    return tuple(part.strip() for part in value.split(",") if part.strip())


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
    env: Mapping[str, str] | None = None,
) -> int:
    values = env if env is not None else os.environ
    raw = values.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ValueError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {value}")
    return value


def _required(values: Mapping[str, str], name: str, default: str) -> str:
    value = values.get(name, default).strip()
    if not value:
        raise ConfigError(f"{name} must be a non-empty string")
    return value


def load_options(env: Mapping[str, str] | None = None) -> ControllerOptions:
    """Build :class:`ControllerOptions` from environment variables.

    Unset variables fall back to the dataclass defaults.  Validation happens
    here so a misconfigured deployment fails at startup rather than on the
    first reconcile.
    """
    values = env if env is not None else os.environ
    defaults = ControllerOptions()

    access_key_type = values.get("ACCESSKEY_TYPE", defaults.access_key_type).strip()
    if access_key_type not in ACCESS_KEY_TYPES:
        raise ConfigError(
            f"ACCESSKEY_TYPE must be one of {sorted(ACCESS_KEY_TYPES)}, got: {access_key_type!r}"
        )

    if "FLUX_NAMESPACES" in values:
        patterns = parse_list(values["FLUX_NAMESPACES"])
    else:
        patterns = defaults.flux_namespace_patterns

    if "PASSTHROUGH_LABEL_PREFIXES" in values:
        passthrough = parse_list(values["PASSTHROUGH_LABEL_PREFIXES"])
    else:
        passthrough = defaults.passthrough_label_prefixes

    return ControllerOptions(
        label_selector=values.get("VCI_LABEL_SELECTOR", defaults.label_selector).strip(),
        secret_key=_required(values, "SECRET_KEY", defaults.secret_key),
        secret_prefix=_required(values, "SECRET_NAME_PREFIX", defaults.secret_prefix),
        server_template=_required(values, "SERVER_TEMPLATE", defaults.server_template),
        loft_domain=values.get("LOFT_DOMAIN", defaults.loft_domain).strip(),
        ca_secret_namespace=values.get("CA_SECRET_NAMESPACE", "").strip(),
        ca_secret_name=values.get("CA_SECRET_NAME", "").strip(),
        ca_secret_key=values.get("CA_SECRET_KEY", defaults.ca_secret_key).strip(),
        flux_namespace_patterns=patterns,
        controller_namespace=_required(
            values, "CONTROLLER_NAMESPACE", defaults.controller_namespace
        ),
        passthrough_label_prefixes=passthrough,
        access_key_type=access_key_type,
        access_key_team=values.get("ACCESSKEY_TEAM", defaults.access_key_team).strip(),
        access_key_display_name_template=values.get(
            "ACCESSKEY_DISPLAY_NAME_TEMPLATE", defaults.access_key_display_name_template
        ),
        workers=env_int("WORKERS", defaults.workers, minimum=1, maximum=32, env=values),
        reconcile_timeout_seconds=env_int(
            "RECONCILE_TIMEOUT_SECONDS",
            defaults.reconcile_timeout_seconds,
            minimum=1,
            maximum=3600,
            env=values,
        ),
        request_timeout_seconds=env_int(
            "REQUEST_TIMEOUT_SECONDS",
            defaults.request_timeout_seconds,
            minimum=1,
            maximum=300,
            env=values,
        ),
    )
