"""
Merges Ingress drafts into the shared resource store.

Several Ingresses may share one virtual (same bind address and port). Each
merge copies the stored config, folds the draft into the copy and stores the
result, all while holding the store lock.
"""
import logging

from .resources import (
    RESOURCE_TYPE_INGRESS,
    IngressSource,
    ProfileRef,
    ResourceConfig,
    Virtual,
    MetaData,
    join_path,
)
from .rules import is_annotation_rule, merge_rules, sort_rules


def set_profiles_for_mode(mode, cfg):
    if mode == 'http':
        cfg.virtual.ip_protocol = 'tcp'
        cfg.virtual.add_or_update_profile(ProfileRef(name='http', partition='Common'))
        cfg.virtual.add_or_update_profile(ProfileRef(name='tcp', partition='Common'))
    elif mode == 'tcp':
        cfg.virtual.ip_protocol = 'tcp'
        cfg.virtual.add_or_update_profile(ProfileRef(name='tcp', partition='Common'))


def source_addr_translation(snat_pool_name):
    if snat_pool_name:
        return {'type': 'snat', 'pool': snat_pool_name}
    return {'type': 'automap'}


def refresh_default_pool(cfg):
    """
    Keeps Virtual.pool_name set only while the config has exactly one pool
    and that pool comes from a single-service Ingress.
    """
    if len(cfg.pools) == 1:
        pool = cfg.pools[0]
        for source in cfg.meta_data.sources.values():
            if source.single_service and pool.name in source.pools:
                cfg.virtual.pool_name = join_path(pool.partition, pool.name)
                return
    cfg.virtual.pool_name = ''


def conflicts(old_cfg, draft):
    """A single-service Ingress never shares an address:port with another Ingress."""
    return bool(
        (old_cfg.virtual.pool_name or draft.single_service)
        and old_cfg.meta_data.ing_name != draft.ing_name
        and old_cfg.virtual.bind_addr
    )


def _new_config(draft, snat_pool_name):
    cfg = ResourceConfig(
        virtual=Virtual(name=draft.virtual_name, partition=draft.partition, enabled=True),
        meta_data=MetaData(resource_type=RESOURCE_TYPE_INGRESS),
    )
    set_profiles_for_mode('http', cfg)
    cfg.virtual.source_addr_translation = source_addr_translation(snat_pool_name)
    cfg.virtual.set_virtual_address(draft.bind_addr, draft.port)
    cfg.pools.extend(draft.pools)
    if draft.policy is not None and draft.policy.rules:
        cfg.set_policy(draft.policy)
    return cfg


def _contributed_elsewhere(cfg, ing_key, attr, name):
    return any(
        name in getattr(source, attr)
        for key, source in cfg.meta_data.sources.items()
        if key != ing_key
    )


def drop_contributions(cfg, ing_key, pools, rules):
    """Removes pools and rules of one Ingress that no other Ingress also contributes."""
    for pool_name in pools:
        if not _contributed_elsewhere(cfg, ing_key, 'pools', pool_name):
            cfg.remove_pool(pool_name)
    for rule_name in rules:
        if not _contributed_elsewhere(cfg, ing_key, 'rules', rule_name):
            cfg.remove_rule(rule_name)


def _prune_stale(cfg, draft):
    previous = cfg.meta_data.sources.get(draft.ing_key)
    if previous is None:
        return
    stale_pools = previous.pools - {p.name for p in draft.pools}
    stale_rules = previous.rules - draft.rule_names()
    if stale_pools or stale_rules:
        logging.info(f"[CORE] Removing stale pools {sorted(stale_pools)} and rules {sorted(stale_rules)} "
                     f"of {draft.ing_key} from {cfg.get_name()}")
        drop_contributions(cfg, draft.ing_key, stale_pools, stale_rules)


def _merge_pools(cfg, draft):
    for new_pool in draft.pools:
        for pool in cfg.pools:
            if pool.name == new_pool.name and pool.service_port == new_pool.service_port:
                if pool.balance != new_pool.balance:
                    pool.balance = new_pool.balance
                break
        else:
            cfg.pools.append(new_pool)


def _same_rule(existing, new_rule):
    if existing.name == new_rule.name:
        return True
    return (not is_annotation_rule(existing.name)
            and not is_annotation_rule(new_rule.name)
            and existing.full_uri == new_rule.full_uri)


def _merge_policy(cfg, draft):
    if cfg.policies and draft.rules:
        policy = cfg.find_policy(cfg.get_name()) or cfg.policies[0]
        for new_rule in draft.rules:
            for i, rule in enumerate(policy.rules):
                if _same_rule(rule, new_rule):
                    # Keep the old ordinal so an unchanged rule is not renumbered
                    new_rule.ordinal = rule.ordinal
                    policy.rules[i] = new_rule
                    break
            else:
                cfg.add_rule_to_policy(policy.name, new_rule)
    elif not cfg.policies and draft.policy is not None and draft.policy.rules:
        cfg.set_policy(draft.policy)


def merge_config(resources, draft, registry, snat_pool_name=''):
    """
    Merges a draft into the store entry for its virtual.

    Returns the stored, merged config, or None when the draft may not share
    the virtual (the store is left untouched) or when the merged config has
    no pools left (its store entry is removed).
    """
    with resources.lock:
        old_cfg = resources.get_by_name(draft.virtual_name)
        if old_cfg is not None and conflicts(old_cfg, draft):
            logging.warning(
                f"Single-service Ingress cannot share the IP and port: "
                f"'{old_cfg.virtual.bind_addr}:{old_cfg.virtual.port}'.")
            return None

        if old_cfg is None:
            cfg = _new_config(draft, snat_pool_name)
        else:
            cfg = old_cfg.copy()
            _prune_stale(cfg, draft)
            _merge_pools(cfg, draft)
            _merge_policy(cfg, draft)

        if not cfg.pools:
            if old_cfg is not None:
                logging.info(f"[CORE] Deleting virtual {cfg.get_name()}, no backend pools are left")
                resources.delete(cfg.get_name())
            registry.forget(cfg.get_name())
            return None

        cfg.meta_data.ing_name = draft.ing_name
        cfg.meta_data.sources[draft.ing_key] = IngressSource(
            single_service=draft.single_service,
            pools={p.name for p in draft.pools},
            rules=draft.rule_names(),
        )
        refresh_default_pool(cfg)

        if draft.url_rewrite_refs or draft.app_root_refs:
            merge_rules(cfg, registry)
        for policy in cfg.policies:
            sort_rules(policy.rules)

        resources.assign(cfg.get_name(), cfg)
        return cfg


def remove_ingress(resources, ing_key, registry, keep=()):
    """
    Removes everything an Ingress contributed to virtuals other than those in `keep`.

    Virtuals left without pools or contributors are deleted. Returns the names
    of the virtuals that changed.
    """
    changed = []
    with resources.lock:
        for name in resources.names():
            if name in keep:
                continue
            cfg = resources.get_by_name(name)
            source = cfg.meta_data.sources.get(ing_key)
            if source is None:
                continue

            cfg = cfg.copy()
            drop_contributions(cfg, ing_key, source.pools, source.rules)
            del cfg.meta_data.sources[ing_key]
            changed.append(name)

            if not cfg.pools or not cfg.meta_data.sources:
                logging.info(f"[CORE] Deleting virtual {name}, its last Ingress is gone")
                resources.delete(name)
                registry.forget(name)
                continue

            if cfg.meta_data.ing_name == ing_key.split('/', 1)[1]:
                cfg.meta_data.ing_name = sorted(cfg.meta_data.sources)[0].split('/', 1)[1]
            refresh_default_pool(cfg)
            for policy in cfg.policies:
                sort_rules(policy.rules)
            resources.assign(name, cfg)
    return changed
