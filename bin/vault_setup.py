#!/usr/bin/env python3
"""
vault-setup — idempotent Vault bootstrap for Kubernetes workloads.

Subcommands:
    setup           Provision auth backends, AWS engines, STS roles and policies
    init            Write vault-setup-config.yaml populated with defaults

For every configured generation (v1 and v2 by default) the setup command
converges the same resources, each under its own mounts:

    auth/<auth_prefix>/local          kubernetes auth method
    <sts_prefix>/                     aws secrets engine (mock AWS by default)
    <sts_prefix>/roles/local-<role>   STS assumed_role role
    <role>-<sts_prefix>               policy granting the STS path
    <role>-kv-<sts_prefix>            optional read/list policy for extra keys

Design note — converge forward only
    Existence is checked with list-then-act, so two concurrent runs against
    the same Vault can both observe "absent" and both enable the same mount.
    Serialize runs externally if that matters.  Leaf configuration (engine
    root config, STS role definitions) is always rewritten; the policy list
    on an auth role is only ever extended, never replaced.
"""
from __future__ import annotations

import argparse
import base64
import os
import sys
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

import hvac
from hvac.exceptions import InvalidPath, VaultError
import requests
import yaml

CONFIG_FILE = "vault-setup-config.yaml"

DEFAULT_VAULT_TIMEOUT = 30
DEFAULT_TOKEN_TTL = "1h"
DEFAULT_MOCK_AWS_ENDPOINT = "http://mock-aws.interface.svc:5000"
SA_PATH = Path("/var/run/secrets/kubernetes.io/serviceaccount")

DEFAULTS: Dict[str, Any] = {
    "vault.addr": "http://vault:8200",
    "vault.timeout": DEFAULT_VAULT_TIMEOUT,
    "vault.verify": True,
    "generations": [
        {"name": "v1", "auth_prefix": "kubernetes", "sts_prefix": "aws"},
        {"name": "v2", "auth_prefix": "kubernetes-v2", "sts_prefix": "kubernetes-aws"},
    ],
    "kubernetes.host": "https://kubernetes.default",
    "kubernetes.api_server": "https://kubernetes.default.svc",
    "kubernetes.reviewer_name": "vault-auth",
    "kubernetes.reviewer_namespace": "my-namespace",
    "aws.access_key": "x",
    "aws.secret_key": "x",
    "aws.region": "us-east-1",
    "aws.iam_endpoint": DEFAULT_MOCK_AWS_ENDPOINT,
    "aws.sts_endpoint": DEFAULT_MOCK_AWS_ENDPOINT,
    "aws.account_id": "000000000000",
    "role.bound_service_account_names": "*",
    "role.bound_service_account_namespaces": "*",
    "role.token_ttl": DEFAULT_TOKEN_TTL,
}


class ProvisioningError(Exception):
    """Base class for errors raised by the provisioning engine itself."""


class MalformedResponseError(ProvisioningError):
    """A remote response did not have the shape the merge logic relies on."""


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------

def project_root() -> Path:
    """Return the directory containing this script's parent (repo root)."""
    return Path(__file__).resolve().parent.parent


def default_config_path() -> Path:
    return project_root() / CONFIG_FILE


def load_config(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def save_config(config: Dict[str, Any], path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        yaml.safe_dump(config, f, sort_keys=False)
    print(f"  Saved config: {path}")


def deep_get(d: Dict[str, Any], path: str, default: Any = None) -> Any:
    """Retrieve a nested value using a dotted path string."""
    cur: Any = d
    for p in path.split("."):
        if not isinstance(cur, dict) or p not in cur:
            return default
        cur = cur[p]
    return cur


def deep_set(d: Dict[str, Any], path: str, value: Any) -> None:
    """Set a nested value using a dotted path string."""
    parts = path.split(".")
    cur = d
    for p in parts[:-1]:
        cur = cur.setdefault(p, {})
    cur[parts[-1]] = value


def _unwrap(response: Any) -> Any:
    """Extract the 'data' payload from an hvac API response.

    hvac >= 2.x returns the full Vault response envelope::

        {"request_id": "...", "lease_id": "", "data": { ... }, ...}

    Older versions returned just the inner dict.  This helper normalises
    both shapes so callers always get the useful payload.
    """
    if isinstance(response, dict) and "data" in response and isinstance(response["data"], dict):
        return response["data"]
    return response


def normalize_mount(mount: str) -> str:
    return mount.strip().strip("/")


def norm_list(x: Any) -> List[str]:
    if x is None:
        return []
    if isinstance(x, list):
        return x
    if isinstance(x, str):
        return [p.strip() for p in x.split(",") if p.strip()]
    return [str(x)]


def unique(items: Iterable[str]) -> List[str]:
    """De-duplicate while keeping first-seen order."""
    seen: Dict[str, None] = {}
    for item in items:
        seen.setdefault(item, None)
    return list(seen)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class Generation:
    """One auth-backend generation and the mounts that belong to it."""

    def __init__(self, name: str, auth_prefix: str, sts_prefix: str):
        self.name = name
        self.auth_prefix = normalize_mount(auth_prefix)
        self.sts_prefix = normalize_mount(sts_prefix)

    @property
    def auth_mount(self) -> str:
        return f"{self.auth_prefix}/local"

    def __repr__(self) -> str:
        return f"Generation({self.name!r}, auth={self.auth_mount!r}, sts={self.sts_prefix!r})"


class SetupConfig:
    """Resolved settings for one provisioning run."""

    def __init__(
        self,
        vault_addr: str,
        vault_token: str,
        generations: Sequence[Generation],
        vault_timeout: int = DEFAULT_VAULT_TIMEOUT,
        vault_verify: Any = True,
        kubernetes_host: str = DEFAULTS["kubernetes.host"],
        api_server: str = DEFAULTS["kubernetes.api_server"],
        reviewer_name: str = DEFAULTS["kubernetes.reviewer_name"],
        reviewer_namespace: str = DEFAULTS["kubernetes.reviewer_namespace"],
        aws_root: Optional[Dict[str, str]] = None,
        aws_account_id: str = DEFAULTS["aws.account_id"],
        bound_service_account_names: str = "*",
        bound_service_account_namespaces: str = "*",
        token_ttl: str = DEFAULT_TOKEN_TTL,
    ):
        self.vault_addr = vault_addr
        self.vault_token = vault_token
        self.generations = list(generations)
        self.vault_timeout = vault_timeout
        self.vault_verify = vault_verify
        self.kubernetes_host = kubernetes_host
        self.api_server = api_server
        self.reviewer_name = reviewer_name
        self.reviewer_namespace = reviewer_namespace
        self.aws_root = aws_root if aws_root is not None else {
            "access_key": DEFAULTS["aws.access_key"],
            "secret_key": DEFAULTS["aws.secret_key"],
            "region": DEFAULTS["aws.region"],
            "iam_endpoint": DEFAULTS["aws.iam_endpoint"],
            "sts_endpoint": DEFAULTS["aws.sts_endpoint"],
        }
        self.aws_account_id = aws_account_id
        self.bound_service_account_names = bound_service_account_names
        self.bound_service_account_namespaces = bound_service_account_namespaces
        self.token_ttl = token_ttl


def parse_generations(raw: Any) -> List[Generation]:
    """Build the generation list from config, rejecting overlapping mounts."""
    if not isinstance(raw, list) or not raw:
        raise SystemExit("generations must be a non-empty list")

    generations: List[Generation] = []
    for i, entry in enumerate(raw):
        if not isinstance(entry, dict):
            raise SystemExit(f"generations[{i}] must be a mapping")
        missing = [k for k in ("name", "auth_prefix", "sts_prefix") if not entry.get(k)]
        if missing:
            raise SystemExit(f"generations[{i}] is missing: {', '.join(missing)}")
        generations.append(Generation(
            str(entry["name"]), str(entry["auth_prefix"]), str(entry["sts_prefix"]),
        ))

    for label, values in (
        ("name", [g.name for g in generations]),
        ("auth_prefix", [g.auth_prefix for g in generations]),
        ("sts_prefix", [g.sts_prefix for g in generations]),
    ):
        dupes = sorted({v for v in values if values.count(v) > 1})
        if dupes:
            raise SystemExit(f"duplicate generation {label}: {', '.join(dupes)}")
    return generations


def resolve_config(
    file_config: Dict[str, Any],
    cli_addr: Optional[str] = None,
    cli_token: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
) -> SetupConfig:
    """Merge CLI flags > environment > config file > defaults."""
    env = os.environ if env is None else env

    def pick(keypath: str) -> Any:
        return deep_get(file_config, keypath, DEFAULTS.get(keypath))

    vault_addr = cli_addr or env.get("VAULT_ADDR") or pick("vault.addr")
    vault_token = cli_token or env.get("VAULT_TOKEN") or deep_get(file_config, "vault.token")

    missing = []
    for name, val in [("vault-addr", vault_addr), ("vault-token", vault_token)]:
        if not val:
            missing.append(name)
    if missing:
        raise SystemExit(f"Missing required fields: {', '.join(missing)}")

    return SetupConfig(
        vault_addr=str(vault_addr),
        vault_token=str(vault_token),
        generations=parse_generations(file_config.get("generations", DEFAULTS["generations"])),
        vault_timeout=int(pick("vault.timeout")),
        vault_verify=pick("vault.verify"),
        kubernetes_host=str(pick("kubernetes.host")),
        api_server=str(pick("kubernetes.api_server")),
        reviewer_name=str(pick("kubernetes.reviewer_name")),
        reviewer_namespace=str(pick("kubernetes.reviewer_namespace")),
        aws_root={
            "access_key": str(pick("aws.access_key")),
            "secret_key": str(pick("aws.secret_key")),
            "region": str(pick("aws.region")),
            "iam_endpoint": str(pick("aws.iam_endpoint")),
            "sts_endpoint": str(pick("aws.sts_endpoint")),
        },
        aws_account_id=str(pick("aws.account_id")),
        bound_service_account_names=str(pick("role.bound_service_account_names")),
        bound_service_account_namespaces=str(pick("role.bound_service_account_namespaces")),
        token_ttl=str(pick("role.token_ttl")),
    )


# ---------------------------------------------------------------------------
# Vault store client
# ---------------------------------------------------------------------------

class VaultStore:
    """Typed operations over an hvac client.

    Only InvalidPath on reads is translated (into None); every other hvac
    or transport error propagates to the caller unchanged.
    """

    def __init__(self, client):
        self.client = client

    @classmethod
    def connect(cls, config: SetupConfig) -> "VaultStore":
        client = hvac.Client(
            url=config.vault_addr,
            token=config.vault_token,
            timeout=config.vault_timeout,
            verify=config.vault_verify,
        )
        if not client.is_authenticated():
            raise SystemExit("Vault authentication failed (check vault addr/token).")
        return cls(client)

    # -- mounts --

    def _mount_types(self, response: Any, what: str) -> Dict[str, Optional[str]]:
        """Map each mount path (without trailing slash) to its backend type."""
        listing = _unwrap(response)
        if not isinstance(listing, dict):
            raise MalformedResponseError(f"{what} listing is not a mapping: {listing!r}")
        return {
            normalize_mount(k): (info.get("type") if isinstance(info, dict) else None)
            for k, info in listing.items()
        }

    def list_auth_mounts(self) -> Dict[str, Optional[str]]:
        return self._mount_types(self.client.sys.list_auth_methods(), "auth method")

    def enable_auth(self, mount: str, method_type: str = "kubernetes") -> None:
        self.client.sys.enable_auth_method(method_type=method_type, path=mount)

    def read_auth_config(self, mount: str) -> Optional[Dict[str, Any]]:
        """Return the auth method's config, or None when none has been written."""
        response = self.client.read(f"auth/{mount}/config")
        if response is None:
            return None
        data = response.get("data") if isinstance(response, dict) else None
        if not isinstance(data, dict):
            raise MalformedResponseError(f"auth/{mount}/config: response has no data mapping")
        return data

    def write_auth_config(self, mount: str, **config: Any) -> None:
        self.client.write(f"auth/{mount}/config", **config)

    def list_secrets_mounts(self) -> Dict[str, Optional[str]]:
        return self._mount_types(self.client.sys.list_mounted_secrets_engines(), "secrets engine")

    def enable_secrets_engine(self, mount: str, backend_type: str = "aws") -> None:
        self.client.sys.enable_secrets_engine(backend_type=backend_type, path=mount)

    def write_root_config(self, mount: str, **config: Any) -> None:
        self.client.write(f"{mount}/config/root", **config)

    # -- auth roles --

    def read_role_policies(self, auth_mount: str, role: str) -> Optional[List[str]]:
        """Return the role's policies, or None when the role does not exist."""
        response = self.client.read(f"auth/{auth_mount}/role/{role}")
        if response is None:
            return None
        data = response.get("data") if isinstance(response, dict) else None
        if not isinstance(data, dict):
            raise MalformedResponseError(
                f"role {role} under auth/{auth_mount}: response has no data mapping"
            )
        raw = data.get("policies")
        if raw is None:
            raw = data.get("token_policies")
        if raw is not None and not isinstance(raw, (list, str)):
            raise MalformedResponseError(
                f"role {role} under auth/{auth_mount}: policies is {type(raw).__name__}"
            )
        policies = norm_list(raw)
        if not all(isinstance(p, str) for p in policies):
            raise MalformedResponseError(
                f"role {role} under auth/{auth_mount}: non-string policy name in {policies!r}"
            )
        return unique(policies)

    def write_role(self, auth_mount: str, role: str, **definition: Any) -> None:
        self.client.write(f"auth/{auth_mount}/role/{role}", **definition)

    # -- policies --

    def read_policy(self, name: str) -> Optional[str]:
        try:
            existing = _unwrap(self.client.sys.read_policy(name=name))
        except InvalidPath:
            return None
        if not isinstance(existing, dict):
            raise MalformedResponseError(f"policy {name}: unexpected response {existing!r}")
        return existing.get("rules") or ""

    def write_policy(self, name: str, hcl: str) -> None:
        self.client.sys.create_or_update_policy(name=name, policy=hcl)

    # -- aws engine roles --

    def write_sts_role(self, sts_mount: str, role: str, **definition: Any) -> None:
        self.client.write(f"{sts_mount}/roles/{role}", **definition)


# ---------------------------------------------------------------------------
# Identity token source
# ---------------------------------------------------------------------------

class IdentityMaterial:
    """Trust material Vault needs to review Kubernetes service-account tokens."""

    def __init__(self, token: str, ca_cert: str, issuer: str):
        self.token = token
        self.ca_cert = ca_cert
        self.issuer = issuer


class KubernetesIdentitySource:
    """Read the token-reviewer secret and the cluster's OIDC issuer."""

    def __init__(
        self,
        reviewer_name: str,
        reviewer_namespace: str,
        api_server: str,
        sa_path: Path = SA_PATH,
    ):
        self.reviewer_name = reviewer_name
        self.reviewer_namespace = reviewer_namespace
        self.api_server = api_server.rstrip("/")
        self.sa_path = sa_path

    def _read_reviewer_secret(self) -> Dict[str, str]:
        from kubernetes import client, config as k8s_config

        try:
            k8s_config.load_incluster_config()
        except k8s_config.ConfigException:
            k8s_config.load_kube_config()

        secret = client.CoreV1Api().read_namespaced_secret(
            name=self.reviewer_name, namespace=self.reviewer_namespace,
        )
        return dict(secret.data or {})

    def _read_issuer(self) -> str:
        headers = {}
        token_file = self.sa_path / "token"
        if token_file.exists():
            headers["Authorization"] = f"Bearer {token_file.read_text().strip()}"
        ca_file = self.sa_path / "ca.crt"
        verify: Any = str(ca_file) if ca_file.exists() else True

        resp = requests.get(
            f"{self.api_server}/.well-known/openid-configuration",
            headers=headers, verify=verify, timeout=10,
        )
        resp.raise_for_status()
        issuer = resp.json().get("issuer")
        if not issuer:
            raise MalformedResponseError("OIDC discovery document has no issuer")
        return issuer

    def fetch(self) -> IdentityMaterial:
        encoded = self._read_reviewer_secret()
        missing = [k for k in ("token", "ca.crt") if not encoded.get(k)]
        if missing:
            raise MalformedResponseError(
                f"secret {self.reviewer_namespace}/{self.reviewer_name} is missing: {', '.join(missing)}"
            )
        return IdentityMaterial(
            token=base64.b64decode(encoded["token"]).decode(),
            ca_cert=base64.b64decode(encoded["ca.crt"]).decode(),
            issuer=self._read_issuer(),
        )


# ---------------------------------------------------------------------------
# Policy rendering
# ---------------------------------------------------------------------------

EMPTY_POLICY_HCL = "# no capabilities granted\n"


def render_policy_hcl(capabilities: Dict[str, Iterable[str]]) -> str:
    """Render {path: capabilities} as one HCL path block per entry.

    Vault rejects an empty policy body, so a mapping with no paths renders
    as a comment-only document that grants nothing.
    """
    if not capabilities:
        return EMPTY_POLICY_HCL
    blocks = []
    for path, caps in capabilities.items():
        cap_list = ", ".join(f'"{c}"' for c in unique(caps))
        blocks.append(f'''\
path "{path}" {{
  capabilities = [{cap_list}]
}}
''')
    return "\n".join(blocks)


# Vault stores policy names lowercased, so derived names are lowercased too.

def sts_policy_name(vault_role: str, sts_prefix: str) -> str:
    return f"{vault_role}-{sts_prefix}".lower()


def kv_policy_name(vault_role: str, sts_prefix: str) -> str:
    return f"{vault_role}-kv-{sts_prefix}".lower()


def sts_role_name(vault_role: str) -> str:
    return f"local-{vault_role}"


# ---------------------------------------------------------------------------
# Provisioner
# ---------------------------------------------------------------------------

class Provisioner:
    """Converge Vault to the configured per-generation layout."""

    def __init__(self, store: VaultStore, identity_source, config: SetupConfig):
        self.store = store
        self.identity_source = identity_source
        self.config = config

    def ensure_auth_backend(self, gen: Generation) -> None:
        mount = gen.auth_mount
        mounts = self.store.list_auth_mounts()
        if mount in mounts:
            if mounts[mount] != "kubernetes":
                raise ProvisioningError(
                    f"auth mount '{mount}/' exists but is type '{mounts[mount]}', not 'kubernetes'"
                )
            # A run that failed between enable and config leaves the mount unconfigured
            if self.store.read_auth_config(mount):
                print(f"[ok] auth enabled: {mount}/ ({gen.name})")
                return
            identity = self.identity_source.fetch()
            print(f"[change] auth {mount}/ has no config, writing it ({gen.name})")
        else:
            identity = self.identity_source.fetch()
            print(f"[change] enabling kubernetes auth at: {mount}/ ({gen.name})")
            self.store.enable_auth(mount)

        self.store.write_auth_config(
            mount,
            token_reviewer_jwt=identity.token,
            kubernetes_host=self.config.kubernetes_host,
            kubernetes_ca_cert=identity.ca_cert,
            issuer=identity.issuer,
        )

    def ensure_secrets_engine(self, gen: Generation) -> None:
        mount = gen.sts_prefix
        mounts = self.store.list_secrets_mounts()
        if mount in mounts:
            if mounts[mount] != "aws":
                raise ProvisioningError(
                    f"secrets mount '{mount}/' exists but is type '{mounts[mount]}', not 'aws'"
                )
            print(f"[ok] secrets engine enabled: {mount}/ ({gen.name})")
        else:
            print(f"[change] enabling aws secrets engine at: {mount}/ ({gen.name})")
            self.store.enable_secrets_engine(mount)

        print(f"[change] writing root config at {mount}/config/root")
        self.store.write_root_config(mount, **self.config.aws_root)

    def write_capability_policy(self, policy_name: str, capabilities: Dict[str, Iterable[str]]) -> None:
        """Replace the named policy with exactly the given capabilities.

        An empty mapping still writes (a policy with no statements), revoking whatever the
        name granted before.  The write is skipped only when Vault already
        holds the identical document.
        """
        hcl = render_policy_hcl(capabilities)
        current = self.store.read_policy(policy_name)
        if current is not None and current.strip() == hcl.strip():
            print(f"[ok] policy unchanged: {policy_name}")
            return

        action = "[change] updating" if current is not None else "[change] creating"
        print(f"{action} policy: {policy_name}")
        self.store.write_policy(policy_name, hcl)

    def associate_policy(self, gen: Generation, policy_name: str, role: str) -> List[str]:
        """Attach policy_name to the auth role, keeping every existing policy.

        Returns the role's resulting policy list.  Names compare
        case-insensitively since Vault lowercases them on write.
        """
        policy_name = policy_name.lower()
        existing = self.store.read_role_policies(gen.auth_mount, role) or []
        if policy_name in [p.lower() for p in existing]:
            print(
                f"[skip] policy {policy_name} is already associated with role {role} "
                f"(auth {gen.auth_mount})"
            )
            return existing

        policies = unique(existing + [policy_name])
        print(f"[change] writing role {role} (auth {gen.auth_mount}): policies={','.join(policies)}")
        self.store.write_role(
            gen.auth_mount,
            role,
            bound_service_account_names=self.config.bound_service_account_names,
            bound_service_account_namespaces=self.config.bound_service_account_namespaces,
            policies=policies,
            ttl=self.config.token_ttl,
        )
        return policies

    def ensure_role(self, gen: Generation, vault_role: str, iam_role: str) -> None:
        sts_role = sts_role_name(vault_role)
        policy_name = sts_policy_name(vault_role, gen.sts_prefix)

        self.write_capability_policy(
            policy_name, {f"{gen.sts_prefix}/sts/{sts_role}": ["read", "update"]},
        )
        self.associate_policy(gen, policy_name, vault_role)

        print(f"[change] writing sts role: {gen.sts_prefix}/roles/{sts_role}")
        self.store.write_sts_role(
            gen.sts_prefix,
            sts_role,
            role_arns=f"arn:aws:iam::{self.config.aws_account_id}:role/{iam_role}",
            credential_type="assumed_role",
        )

    def add_kv_read_permissions(self, gen: Generation, vault_role: str, keys: Sequence[str]) -> None:
        """Grant read/list on every key in one policy and attach it to the role."""
        policy_name = kv_policy_name(vault_role, gen.sts_prefix)
        self.write_capability_policy(policy_name, {key: ["read", "list"] for key in keys})
        self.associate_policy(gen, policy_name, vault_role)

    def provision_generation(self, gen: Generation, vault_role: str, iam_role: str) -> None:
        print(f"\n--- generation {gen.name} (auth {gen.auth_mount}, sts {gen.sts_prefix}) ---")
        self.ensure_auth_backend(gen)
        self.ensure_secrets_engine(gen)
        self.ensure_role(gen, vault_role, iam_role)

    def setup(self, vault_role: str, iam_role: str, extra_keys: Sequence[str] = ()) -> None:
        for gen in self.config.generations:
            self.provision_generation(gen, vault_role, iam_role)

        keys = unique(extra_keys)
        if keys:
            for gen in self.config.generations:
                print(f"\n--- kv read permissions ({gen.name}) ---")
                self.add_kv_read_permissions(gen, vault_role, keys)


# ---------------------------------------------------------------------------
# Subcommands
# ---------------------------------------------------------------------------

def cmd_setup(args: argparse.Namespace) -> int:
    """Provision both generations for a Vault role and IAM role."""
    config_path = Path(args.config) if args.config else default_config_path()
    config = resolve_config(load_config(config_path), args.vault_addr, args.vault_token)

    print("=== vault-setup — setup ===")
    print(f"  Vault:       {config.vault_addr}")
    print(f"  Vault role:  {args.vault_role}")
    print(f"  IAM role:    {args.iam_role}")
    print(f"  Generations: {', '.join(g.name for g in config.generations)}")
    if args.keys:
        print(f"  KV keys:     {', '.join(args.keys)}")

    from kubernetes.client.rest import ApiException
    from kubernetes.config import ConfigException

    identity_source = KubernetesIdentitySource(
        config.reviewer_name, config.reviewer_namespace, config.api_server,
    )

    try:
        store = VaultStore.connect(config)
        Provisioner(store, identity_source, config).setup(
            args.vault_role, args.iam_role, args.keys,
        )
    except (
        VaultError,
        requests.RequestException,
        ApiException,
        ConfigException,
        ProvisioningError,
    ) as e:
        print(f"[ERROR] {type(e).__name__}: {e}", file=sys.stderr)
        return 1

    print(f"\n[done] Vault setup complete for role {args.vault_role}.")
    return 0


def cmd_init(args: argparse.Namespace) -> int:
    """Write the config file, filling in defaults for anything unset."""
    config_path = Path(args.config) if args.config else default_config_path()
    config = load_config(config_path)

    print("=== vault-setup — init ===")
    for key, default_val in DEFAULTS.items():
        if deep_get(config, key) is None:
            deep_set(config, key, default_val)
            print(f"  [default]    {key}")
        else:
            print(f"  [kept]       {key}")

    save_config(config, config_path)
    print("\n[done] init complete.")
    print("NOTE: VAULT_TOKEN is read from the environment or --vault-token; it is not stored.")
    return 0


# ---------------------------------------------------------------------------
# Argument parser
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="vault-setup",
        description="Idempotent Vault bootstrap for Kubernetes auth and AWS STS roles.",
    )
    parser.add_argument(
        "--config", "-c",
        default=None,
        help=f"Path to config file (default: {CONFIG_FILE} in project root)",
    )

    subs = parser.add_subparsers(dest="command", help="Subcommand")

    # -- setup ---------------------------------------------------------------
    p_setup = subs.add_parser("setup", help="Provision auth, engines, roles and policies")
    p_setup.add_argument("vault_role", help="Kubernetes auth role name")
    p_setup.add_argument("iam_role", help="IAM role name assumed through STS")
    p_setup.add_argument("keys", nargs="*", default=[],
                         help="Optional KV paths to grant read/list on")
    p_setup.add_argument("--vault-addr", default=None,
                         help="Vault URL (default: $VAULT_ADDR, then config)")
    p_setup.add_argument("--vault-token", default=None,
                         help="Vault admin token (default: $VAULT_TOKEN)")

    # -- init ----------------------------------------------------------------
    subs.add_parser("init", help="Write config file with defaults")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    argv = sys.argv[1:] if argv is None else argv
    # Intercept "help" before argparse rejects it as an unknown subcommand
    if not argv or argv[0] in ("help", "-h", "--help"):
        parser.print_help()
        return 0
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    dispatch = {
        "setup": cmd_setup,
        "init": cmd_init,
    }

    return dispatch[args.command](args)


if __name__ == "__main__":
    sys.exit(main())
