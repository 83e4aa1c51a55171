import base64
import logging
import threading
from dataclasses import asdict, dataclass, field

from .clients.events import EVENT_WARNING
from .errors import InvalidSecretError
from .resources import (
    CUSTOM_PROFILE_CLIENT,
    CUSTOM_PROFILE_SERVER,
    DEFAULT_PARTITION,
    ProfileRef,
    format_ssl_profile_name,
    join_path,
    profile_ref_from_string,
)

HTTP_REDIRECT_IRULE_NAME = 'http_redirect_irule'
HTTPS_REDIRECT_DG_NAME = 'https_redirect_dg'

# Cached value for a secret that was looked up and not found
MISSING = object()


def http_redirect_irule(port, partition=DEFAULT_PARTITION):
    """iRule redirecting the host/paths listed in the redirect datagroup to https."""
    return f"""when HTTP_REQUEST {{
    set host [string tolower [getfield [HTTP::host] ":" 1]]
    set path [HTTP::path]
    if {{ [class match -- "$host$path" starts_with /{partition}/{HTTPS_REDIRECT_DG_NAME}] or
         [class match -- "*$path" starts_with /{partition}/{HTTPS_REDIRECT_DG_NAME}] }} {{
        HTTP::redirect https://$host:{port}[HTTP::uri]
    }}
}}"""


class ServiceFwdRuleMap:
    """namespace/service -> host -> paths covered by the http to https redirect."""

    def __init__(self):
        self._entries = {}

    def add_entry(self, namespace, service_name, host, path):
        key = f"{namespace}/{service_name}"
        self._entries.setdefault(key, {}).setdefault(host, set()).add(path or '/')

    def entries(self):
        for key in sorted(self._entries):
            for host in sorted(self._entries[key]):
                for path in sorted(self._entries[key][host]):
                    yield key, host, path

    def datagroup_records(self):
        records = {f"{host}{path}": path for _, host, path in self.entries()}
        return [{'name': name, 'data': data} for name, data in sorted(records.items())]

    def __len__(self):
        return sum(1 for _ in self.entries())


class SSLContextCache:
    """
    TLS secrets referenced by Ingresses, keyed by namespace and secret name.

    Entries are refreshed every time an Ingress referencing them is
    reconciled and never evicted.
    """

    def __init__(self, cluster_index):
        self.cluster_index = cluster_index
        self._secrets = {}
        self._lock = threading.Lock()

    def prepare(self, ing):
        if ing.spec is None:
            return
        for tls in ing.spec.tls or []:
            if not tls.secret_name:
                continue
            secret = self.cluster_index.get_secret(ing.metadata.namespace, tls.secret_name)
            with self._lock:
                self._secrets[(ing.metadata.namespace, tls.secret_name)] = MISSING if secret is None else secret

    def get(self, namespace, secret_name):
        with self._lock:
            secret = self._secrets.get((namespace, secret_name), MISSING)
        return None if secret is MISSING else secret


@dataclass
class IRule:
    name: str
    partition: str
    code: str


@dataclass
class InternalDataGroup:
    name: str
    partition: str
    records: list = field(default_factory=list)


@dataclass
class CustomProfile:
    name: str
    partition: str
    context: str
    namespace: str
    cert: str
    key: str


class TLSPolicyEngine:
    """
    Attaches TLS profiles and the http to https redirect to ingress virtuals.

    Also owns the iRules, internal datagroups and secret-backed custom
    profiles shared by all virtuals.
    """

    def __init__(self, ssl_context, recorder, partition=DEFAULT_PARTITION):
        self.ssl_context = ssl_context
        self.recorder = recorder
        self.partition = partition
        self.irules = {}
        self.internal_datagroups = {}
        self.custom_profiles = {}
        self._redirect_records = {}
        self._lock = threading.RLock()

    def add_irule(self, name, partition, code):
        with self._lock:
            key = join_path(partition, name)
            if key in self.irules:
                return False
            self.irules[key] = IRule(name=name, partition=partition, code=code)
            return True

    def add_internal_datagroup(self, name, partition):
        with self._lock:
            key = join_path(partition, name)
            if key in self.internal_datagroups:
                return False
            self.internal_datagroups[key] = InternalDataGroup(name=name, partition=partition)
            return True

    def set_redirect_entries(self, ing_key, fwd_rules_map):
        """Replaces the redirect records an Ingress contributes to the redirect datagroup."""
        with self._lock:
            if len(fwd_rules_map):
                self._redirect_records[ing_key] = fwd_rules_map.datagroup_records()
            else:
                self._redirect_records.pop(ing_key, None)
            self._refresh_redirect_datagroup()

    def drop_redirect_entries(self, ing_key):
        with self._lock:
            self._redirect_records.pop(ing_key, None)
            self._refresh_redirect_datagroup()

    def _refresh_redirect_datagroup(self):
        datagroup = self.internal_datagroups.get(join_path(self.partition, HTTPS_REDIRECT_DG_NAME))
        if datagroup is None:
            return
        records = {}
        for ing_records in self._redirect_records.values():
            for record in ing_records:
                records[record['name']] = record
        datagroup.records = [records[name] for name in sorted(records)]

    def create_secret_ssl_profile(self, cfg, secret):
        """
        Registers a client profile built from a kubernetes.io/tls secret.

        Returns True when the stored profile was added or changed.
        """
        data = secret.data or {}
        if not data.get('tls.crt') or not data.get('tls.key'):
            raise InvalidSecretError(
                f"Secret {secret.metadata.namespace}/{secret.metadata.name} has no tls.crt or tls.key")
        profile = CustomProfile(
            name=secret.metadata.name,
            partition=cfg.virtual.partition,
            context=CUSTOM_PROFILE_CLIENT,
            namespace=secret.metadata.namespace,
            cert=base64.b64decode(data['tls.crt']).decode(),
            key=base64.b64decode(data['tls.key']).decode(),
        )
        with self._lock:
            key = (profile.partition, profile.name, profile.namespace)
            if self.custom_profiles.get(key) == profile:
                return False
            self.custom_profiles[key] = profile
            return True

    def handle_ingress_tls(self, cfg, ing, annotations, fwd_rules_map):
        """
        Applies the TLS state of an Ingress to one of its virtuals.

        -----------------------------------------------------------------
        | State | sslRedirect | allowHttp | Description                 |
        -----------------------------------------------------------------
        |   1   |     F       |    F      | Just HTTPS, nothing on HTTP |
        |   2   |     T       |    F      | HTTP redirects to HTTPS     |
        |   2   |     T       |    T      | Honor sslRedirect == true   |
        |   3   |     F       |    T      | Both HTTP and HTTPS         |
        -----------------------------------------------------------------

        Returns True when a secret-backed profile was added or changed.
        """
        if not (ing.spec is not None and ing.spec.tls) and not annotations.client_ssl:
            return False
        if not cfg.virtual.bind_addr:
            # Pool-only mode
            return False

        if cfg.virtual.port == annotations.https_port:
            return self._handle_https(cfg, ing, annotations)

        if annotations.ssl_redirect:
            self._apply_redirect(cfg, ing, annotations, fwd_rules_map)
        elif annotations.allow_http:
            logging.debug("[CORE] TLS: Not applying any policies.")
        return False

    def _handle_https(self, cfg, ing, annotations):
        namespace = ing.metadata.namespace
        updated = False
        if annotations.client_ssl:
            if annotations.client_ssl_profiles is None:
                # Already reported when the annotations were parsed
                logging.warning(f"[CORE] Skipping client SSL profiles of Ingress {namespace}/{ing.metadata.name}")
            else:
                for profile in annotations.client_ssl_profiles:
                    cfg.virtual.add_or_update_profile(profile_ref_from_string(
                        format_ssl_profile_name(profile), CUSTOM_PROFILE_CLIENT, namespace))
        else:
            for tls in ing.spec.tls:
                secret = self.ssl_context.get(namespace, tls.secret_name)
                if secret is None:
                    msg = f"No Secret with name {tls.secret_name} in namespace {namespace}, "
                    logging.error(f"[CORE] {msg}")
                    self.recorder.record(ing, EVENT_WARNING, 'SecretNotFound', msg)
                    cfg.virtual.remove_profiles_named(tls.secret_name, CUSTOM_PROFILE_CLIENT, namespace)
                    continue
                try:
                    changed = self.create_secret_ssl_profile(cfg, secret)
                except InvalidSecretError as e:
                    logging.warning(f"[CORE] {e}")
                    continue
                updated = updated or changed
                cfg.virtual.add_or_update_profile(ProfileRef(
                    name=tls.secret_name,
                    partition=cfg.virtual.partition,
                    context=CUSTOM_PROFILE_CLIENT,
                    namespace=namespace,
                ))

        if annotations.server_ssl:
            cfg.virtual.add_or_update_profile(profile_ref_from_string(
                format_ssl_profile_name(annotations.server_ssl), CUSTOM_PROFILE_SERVER, namespace))
        return updated

    def _apply_redirect(self, cfg, ing, annotations, fwd_rules_map):
        logging.debug("[CORE] TLS: Applying HTTP redirect iRule.")
        rule_name = f"{HTTP_REDIRECT_IRULE_NAME}_{annotations.https_port}"
        self.add_irule(rule_name, self.partition, http_redirect_irule(annotations.https_port, self.partition))
        self.add_internal_datagroup(HTTPS_REDIRECT_DG_NAME, self.partition)
        cfg.virtual.add_irule(join_path(self.partition, rule_name))

        namespace = ing.metadata.namespace
        backend = ing.spec.default_backend
        if backend is not None and backend.service is not None:
            fwd_rules_map.add_entry(namespace, backend.service.name, '*', '/')
        for rule in ing.spec.rules or []:
            if rule.http is None:
                continue
            for path in rule.http.paths:
                if path.backend.service is not None:
                    fwd_rules_map.add_entry(namespace, path.backend.service.name, rule.host or '*', path.path)

    def snapshot(self):
        with self._lock:
            return {
                'iRules': [asdict(r) for _, r in sorted(self.irules.items())],
                'internalDataGroups': [asdict(d) for _, d in sorted(self.internal_datagroups.items())],
                'customProfiles': [asdict(p) for _, p in sorted(self.custom_profiles.items())],
            }
