import logging
from dataclasses import dataclass, field

from .annotations import CONTROLLER_DEFAULT_ADDR, SINGLE_VALUE_KEY
from .errors import RuleConfigError
from .resources import (
    Pool,
    create_policy,
    format_ingress_pool_name,
    format_ingress_rule_name,
    format_ingress_vs_name,
    join_path,
)
from .rules import compile_rules, create_rule, is_wildcard_uri, process_app_root, process_url_rewrite


@dataclass
class Draft:
    """A freshly synthesized configuration for one Ingress on one virtual port."""
    ing_key: str
    ing_name: str
    virtual_name: str
    partition: str
    bind_addr: str
    port: int
    single_service: bool
    pools: list = field(default_factory=list)
    rules: list = None
    policy: object = None
    url_rewrite_refs: dict = field(default_factory=dict)
    app_root_refs: dict = field(default_factory=dict)

    def rule_names(self):
        return {rule.name for rule in self.rules or []}


def ingress_key(ing):
    return f"{ing.metadata.namespace}/{ing.metadata.name}"


def service_port(port):
    """An Ingress backend port is either a number or a named port."""
    if port is None:
        return 0
    if port.number is not None:
        return port.number
    return port.name or 0


def is_single_service(ing):
    return not ing.spec.rules


def resolve_bind_addr(annotations, default_ip):
    """
    Picks the virtual address: the annotation, the controller default, or nothing (pool-only).
    """
    if annotations.bind_addr is not None:
        if annotations.bind_addr == CONTROLLER_DEFAULT_ADDR:
            return default_ip or ''
        return annotations.bind_addr
    if default_ip and default_ip != '0.0.0.0':
        return default_ip
    logging.error(
        "Ingress IP Address is not provided. Unable to process ingress resources. "
        "Either configure controller with 'defaultIngressIP' or Ingress with an ip annotation.")
    return ''


def _multi_service_pools(ing, annotations, service_index):
    namespace = ing.metadata.namespace
    pools = []
    for rule in ing.spec.rules:
        if rule.http is None:
            continue
        for path in rule.http.paths:
            svc = path.backend.service
            if svc is None:
                continue
            port = service_port(svc.port)
            if any(p.service_name == svc.name and p.service_port == port for p in pools):
                continue
            # Backends whose service does not exist yet get no pool
            if service_index.get_service(namespace, svc.name) is None:
                continue
            pools.append(Pool(
                name=format_ingress_pool_name(namespace, svc.name, port),
                partition=annotations.partition,
                balance=annotations.balance,
                service_name=svc.name,
                service_port=port,
            ))
    return pools


def process_ingress_rules(spec, annotations, pools, partition, parallel=False):
    """
    Turns every host/path of a multi-service Ingress into a compiled rule list.

    Returns (rules, url_rewrite_refs, app_root_refs). Raises RuleConfigError
    when a path cannot be turned into a rule.
    """
    literal = {}
    wildcards = {}
    url_rewrite_rules = []
    app_root_rules = []
    url_rewrite_refs = {}
    app_root_refs = {}

    for rule in spec.rules:
        if rule.http is None:
            continue
        host = rule.host or ''
        for path in rule.http.paths:
            svc = path.backend.service
            if svc is None:
                continue
            port = service_port(svc.port)
            pool_name = ''
            for pool in pools:
                if pool.service_name == svc.name and pool.service_port == port:
                    pool_name = pool.name
            if not pool_name:
                continue

            uri = host + (path.path or '')
            rl = create_rule(uri, pool_name, partition, format_ingress_rule_name(host, path.path, pool_name))
            if is_wildcard_uri(uri):
                wildcards[uri] = rl
            else:
                literal[uri] = rl

            if uri in annotations.url_rewrite:
                rewrite_rule = process_url_rewrite(uri, annotations.url_rewrite[uri])
                if rewrite_rule is not None:
                    url_rewrite_rules.append(rewrite_rule)
                    url_rewrite_refs[pool_name] = rewrite_rule.name

            if host in annotations.app_root:
                pair = process_app_root(uri, annotations.app_root[host], join_path(partition, pool_name))
                known = {r.name for r in app_root_rules}
                for app_root_rule in pair:
                    if app_root_rule.name in known:
                        continue
                    app_root_rules.append(app_root_rule)
                    app_root_refs.setdefault(pool_name, []).append(app_root_rule.name)

    rules = compile_rules(
        list(literal.values()),
        list(wildcards.values()),
        app_root_rules,
        url_rewrite_rules,
        annotations.source_ranges,
        parallel=parallel,
    )
    return rules, url_rewrite_refs, app_root_refs


def _single_service_app_root(annotations, pool):
    if not annotations.app_root:
        return None
    if len(annotations.app_root) > 1:
        logging.warning("Single service ingress does not support multiple app-root annotation values, not processing")
        return None
    if SINGLE_VALUE_KEY not in annotations.app_root:
        logging.warning(
            "[CORE] App root annotation does not support targeted values for single service ingress, not processing")
        return None
    pair = process_app_root('', annotations.app_root[SINGLE_VALUE_KEY], join_path(pool.partition, pool.name))
    return compile_rules([], [], app_root_rules=pair)


def synthesize(ing, annotations, vport, service_index, default_ip='', parallel=False):
    """
    Builds the draft pools and rules an Ingress contributes to one virtual port.

    Raises RuleConfigError when the Ingress cannot be turned into a
    configuration; nothing should be committed in that case.
    """
    bind_addr = resolve_bind_addr(annotations, default_ip)
    partition = annotations.partition
    draft = Draft(
        ing_key=ingress_key(ing),
        ing_name=ing.metadata.name,
        virtual_name=format_ingress_vs_name(bind_addr, vport.port),
        partition=partition,
        bind_addr=bind_addr,
        port=vport.port,
        single_service=is_single_service(ing),
    )

    if not draft.single_service:
        draft.pools = _multi_service_pools(ing, annotations, service_index)
        draft.rules, draft.url_rewrite_refs, draft.app_root_refs = process_ingress_rules(
            ing.spec, annotations, draft.pools, partition, parallel=parallel)
        draft.policy = create_policy(draft.rules, draft.virtual_name, partition)
        return draft

    backend = ing.spec.default_backend
    if backend is None or backend.service is None:
        raise RuleConfigError(f"Ingress {draft.ing_key} has neither rules nor a default service backend")

    port = service_port(backend.service.port)
    pool = Pool(
        name=format_ingress_pool_name(ing.metadata.namespace, backend.service.name, port),
        partition=partition,
        balance=annotations.balance,
        service_name=backend.service.name,
        service_port=port,
    )
    draft.pools = [pool]

    if annotations.url_rewrite:
        logging.warning("Single service ingress does not support url-rewrite annotation, not processing")

    app_root_rules = _single_service_app_root(annotations, pool)
    if app_root_rules:
        draft.rules = app_root_rules
        draft.policy = create_policy(app_root_rules, draft.virtual_name, partition)
        draft.app_root_refs[pool.name] = [r.name for r in app_root_rules]
    return draft
