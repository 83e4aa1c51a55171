import copy
import threading
from dataclasses import asdict, dataclass, field

DEFAULT_PARTITION = 'k8s'
DEFAULT_BALANCE = 'round-robin'
DEFAULT_HTTP_PORT = 80
DEFAULT_HTTPS_PORT = 443

CUSTOM_PROFILE_ALL = 'all'
CUSTOM_PROFILE_CLIENT = 'clientside'
CUSTOM_PROFILE_SERVER = 'serverside'

RESOURCE_TYPE_INGRESS = 'ingress'


def format_ingress_vs_name(ip, port):
    """
    Builds the virtual server name for an address:port pair.

    Brackets are dropped, '.', ':' and '/' become '-', and the route domain
    separator '%' becomes '.', so the name is safe on the load balancer.
    """
    ip = ip.strip('[]')
    for char in '.:/':
        ip = ip.replace(char, '-')
    ip = ip.replace('%', '.')
    return f"ingress_{ip}_{port}"


def format_ingress_pool_name(namespace, service_name, port):
    """One pool per service port, so a service used on two ports gets two names."""
    return f"ingress_{namespace}_{service_name}_{port}"


def format_ingress_rule_name(host, path, pool_name):
    if not path:
        return f"ingress_{host}_{pool_name}"
    path = path[1:] if path.startswith('/') else path
    path = path.replace('/', '_')
    return f"ingress_{host}_{path}_{pool_name}"


def format_ssl_profile_name(profile):
    """Profile names without a partition live in Common."""
    profile = profile.strip()
    parts = profile.split('/')
    if len(parts) == 1:
        return f"Common/{profile}"
    return profile


def join_path(partition, name):
    return f"/{partition}/{name}"


def split_path(path):
    """Splits '/partition/name' (or 'partition/name') into its two parts."""
    partition, _, name = path.lstrip('/').rpartition('/')
    return partition, name


def split_ip_with_route_domain(address):
    """Returns the IP and route domain of an 'ip%rd' address; rd is None when absent."""
    ip, sep, route_domain = address.partition('%')
    if sep and route_domain.isdigit():
        return ip, int(route_domain)
    return ip, None


@dataclass
class ProfileRef:
    name: str
    partition: str
    context: str = CUSTOM_PROFILE_ALL
    namespace: str = ''

    def key(self):
        return self.partition, self.name


def profile_ref_from_string(profile_name, context, namespace):
    """Converts 'partition/name' into a ProfileRef; bare names default to Common."""
    partition, _, name = profile_name.strip().lstrip('/').rpartition('/')
    return ProfileRef(name=name, partition=partition or 'Common', context=context, namespace=namespace)


@dataclass
class Virtual:
    name: str = ''
    partition: str = DEFAULT_PARTITION
    bind_addr: str = ''
    port: int = 0
    pool_name: str = ''
    enabled: bool = False
    ip_protocol: str = ''
    source_addr_translation: dict = field(default_factory=dict)
    profiles: list = field(default_factory=list)
    irules: list = field(default_factory=list)

    def set_virtual_address(self, bind_addr, port):
        self.bind_addr = bind_addr
        self.port = port

    def add_or_update_profile(self, profile):
        """Adds a profile, or updates the one with the same partition/name. Returns True on change."""
        for i, existing in enumerate(self.profiles):
            if existing.key() == profile.key():
                if existing == profile:
                    return False
                self.profiles[i] = profile
                return True
        self.profiles.append(profile)
        self.profiles.sort(key=lambda p: (p.partition, p.name))
        return True

    def remove_profile(self, profile):
        before = len(self.profiles)
        self.profiles = [p for p in self.profiles if p.key() != profile.key()]
        return len(self.profiles) != before

    def remove_profiles_named(self, name, context, namespace):
        before = len(self.profiles)
        self.profiles = [
            p for p in self.profiles
            if not (p.name == name and p.context == context and p.namespace == namespace)
        ]
        return len(self.profiles) != before

    def add_irule(self, irule):
        if irule in self.irules:
            return False
        self.irules.append(irule)
        return True


@dataclass
class Pool:
    name: str
    partition: str = DEFAULT_PARTITION
    balance: str = DEFAULT_BALANCE
    service_name: str = ''
    service_port: object = 0
    monitors: list = field(default_factory=list)


@dataclass
class Condition:
    name: str = '0'
    index: int = 0
    request: bool = True
    host: bool = False
    http_host: bool = False
    http_uri: bool = False
    path: bool = False
    path_segment: bool = False
    tcp: bool = False
    address: bool = False
    equals: bool = False
    ends_with: bool = False
    starts_with: bool = False
    matches: bool = False
    values: list = field(default_factory=list)


@dataclass
class Action:
    name: str = '0'
    request: bool = True
    forward: bool = False
    pool: str = ''
    redirect: bool = False
    http_reply: bool = False
    location: str = ''
    replace: bool = False
    http_host: bool = False
    http_uri: bool = False
    path: str = ''
    value: str = ''

    def same_effect(self, other):
        """Compares two actions ignoring their position name."""
        mine = asdict(self)
        theirs = asdict(other)
        mine.pop('name')
        theirs.pop('name')
        return mine == theirs


@dataclass
class Rule:
    name: str
    full_uri: str
    ordinal: int = 0
    conditions: list = field(default_factory=list)
    actions: list = field(default_factory=list)


@dataclass
class Policy:
    name: str
    partition: str = DEFAULT_PARTITION
    controls: list = field(default_factory=lambda: ['forwarding'])
    requires: list = field(default_factory=lambda: ['http'])
    strategy: str = '/Common/first-match'
    rules: list = field(default_factory=list)


def create_policy(rules, policy_name, partition):
    return Policy(name=policy_name, partition=partition, rules=list(rules))


@dataclass
class Monitor:
    name: str
    partition: str = DEFAULT_PARTITION
    type: str = 'http'
    interval: int = 0
    timeout: int = 0
    send: str = ''
    recv: str = ''
    path: str = ''


@dataclass
class IngressSource:
    """What one Ingress contributed to a virtual."""
    single_service: bool = False
    pools: set = field(default_factory=set)
    rules: set = field(default_factory=set)


@dataclass
class MetaData:
    ing_name: str = ''
    resource_type: str = ''
    sources: dict = field(default_factory=dict)


@dataclass
class ResourceConfig:
    virtual: Virtual = field(default_factory=Virtual)
    pools: list = field(default_factory=list)
    policies: list = field(default_factory=list)
    monitors: list = field(default_factory=list)
    meta_data: MetaData = field(default_factory=MetaData)

    def get_name(self):
        return self.virtual.name

    def copy(self):
        return copy.deepcopy(self)

    def find_pool(self, name):
        for pool in self.pools:
            if pool.name == name:
                return pool
        return None

    def find_policy(self, name):
        for policy in self.policies:
            if policy.name == name:
                return policy
        return None

    def set_policy(self, policy):
        for i, existing in enumerate(self.policies):
            if existing.name == policy.name:
                self.policies[i] = policy
                return
        self.policies.append(policy)

    def add_rule_to_policy(self, policy_name, rule):
        policy = self.find_policy(policy_name)
        if policy is None:
            return False
        rule.ordinal = len(policy.rules)
        policy.rules.append(rule)
        return True

    def remove_rule(self, rule_name):
        for policy in self.policies:
            policy.rules = [r for r in policy.rules if r.name != rule_name]
        self.policies = [p for p in self.policies if p.rules]

    def remove_pool(self, pool_name):
        self.remove_monitor(pool_name)
        self.pools = [p for p in self.pools if p.name != pool_name]

    def add_or_update_monitor(self, monitor):
        for i, existing in enumerate(self.monitors):
            if existing.name == monitor.name:
                self.monitors[i] = monitor
                return
        self.monitors.append(monitor)

    def remove_monitor(self, pool_name):
        """Drops every monitor attached to the named pool."""
        pool = self.find_pool(pool_name)
        if pool is None:
            return
        names = {split_path(m)[1] for m in pool.monitors}
        self.monitors = [m for m in self.monitors if m.name not in names]
        pool.monitors = []

    def to_dict(self):
        data = asdict(self)
        data['meta_data']['sources'] = {
            key: {
                'single_service': source.single_service,
                'pools': sorted(source.pools),
                'rules': sorted(source.rules),
            }
            for key, source in self.meta_data.sources.items()
        }
        return data


class Resources:
    """
    The shared map from virtual name to its ResourceConfig.

    One coarse re-entrant lock guards the whole store. Any read-modify-write of
    a config (pools, policies and virtual fields together) must happen while
    holding `lock`; the lock must be released before triggering a deploy.
    """

    def __init__(self):
        self.lock = threading.RLock()
        self._configs = {}

    def get_by_name(self, name):
        with self.lock:
            return self._configs.get(name)

    def assign(self, name, cfg):
        with self.lock:
            self._configs[name] = cfg

    def delete(self, name):
        with self.lock:
            return self._configs.pop(name, None) is not None

    def names(self):
        with self.lock:
            return list(self._configs)

    def snapshot(self):
        with self.lock:
            return [cfg.to_dict() for _, cfg in sorted(self._configs.items())]

    def __len__(self):
        with self.lock:
            return len(self._configs)
