import logging
from dataclasses import dataclass

from .clients.events import EVENT_WARNING
from .resources import Monitor, join_path, split_path
from .synthesizer import service_port


@dataclass
class RuleData:
    svc_name: str
    svc_port: object
    health_mon: object = None
    assigned: bool = False


def split_monitor_path(path):
    """Splits 'host/path' at the first slash; returns None when there is no slash."""
    slash = path.find('/')
    if slash == -1:
        return None
    return path[:slash], path[slash:]


def split_rule_uri(full_uri):
    slash = full_uri.find('/')
    if slash == -1:
        return full_uri, '/'
    return full_uri[:slash], full_uri[slash:]


def assign_monitor_to_pool(cfg, pool_path, rule_data):
    """Attaches the monitor of `rule_data` to the named pool; repeated calls change nothing."""
    _, pool_name = split_path(pool_path)
    for pool in cfg.pools:
        if pool.name != pool_name:
            continue
        mon = rule_data.health_mon
        monitor = Monitor(
            name=f"{pool.name}_0_{mon.type}",
            partition=pool.partition,
            type=mon.type,
            interval=mon.interval,
            timeout=mon.timeout,
            send=mon.send,
            recv=mon.recv,
            path=mon.path,
        )
        cfg.add_or_update_monitor(monitor)
        monitor_ref = join_path(monitor.partition, monitor.name)
        if monitor_ref not in pool.monitors:
            pool.monitors.append(monitor_ref)
        rule_data.assigned = True


class HealthMonitorBinder:
    """Binds annotation health monitors to the pools their host/path routes to."""

    def __init__(self, resources, recorder):
        self.resources = resources
        self.recorder = recorder

    def single_service_map(self, ing):
        backend = ing.spec.default_backend.service
        return {'*': {'/': RuleData(svc_name=backend.name, svc_port=service_port(backend.port))}}

    def multi_service_map(self, ing):
        htp_map = {}
        for rule in ing.spec.rules:
            if rule.http is None:
                continue
            host = rule.host or '*'
            paths = htp_map.setdefault(host, {})
            for path in rule.http.paths:
                path_key = path.path or '/'
                if path_key in paths:
                    msg = f"Health Monitor path '{path_key}' already exists for host '{rule.host}'"
                    logging.warning(f"[CORE] {msg}")
                    self.recorder.record(ing, EVENT_WARNING, 'DuplicatePath', msg)
                    continue
                svc = path.backend.service
                paths[path_key] = RuleData(
                    svc_name=svc.name if svc is not None else '',
                    svc_port=service_port(svc.port) if svc is not None else 0,
                )

        if '*' in htp_map:
            for host in htp_map:
                if host == '*':
                    continue
                msg = f"Health Monitor rule for host {host} conflicts with rule for all hosts."
                logging.warning(f"[CORE] {msg}")
                self.recorder.record(ing, EVENT_WARNING, 'DuplicatePath', msg)
        return htp_map

    def assign_health_monitors_by_path(self, ing, rules_map, monitors):
        """Attaches each monitor to the rule data of its host/path; problems are per monitor."""
        for mon in monitors:
            parts = split_monitor_path(mon.path)
            if parts is None:
                msg = f"Health Monitor path '{mon.path}' is not valid."
                logging.warning(f"[CORE] {msg}")
                self.recorder.record(ing, EVENT_WARNING, 'MonitorError', msg)
                continue

            host, path = parts
            paths = rules_map.get(host)
            if paths is None and host != '*':
                paths = rules_map.get('*')
            if paths is None:
                msg = f"Rule not found for Health Monitor host {host}"
                logging.warning(f"[CORE] {msg}")
                self.recorder.record(ing, EVENT_WARNING, 'MonitorRuleNotFound', msg)
                continue

            rule_data = paths.get(path)
            if rule_data is None:
                msg = f"Rule not found for Health Monitor path {mon.path}"
                logging.warning(f"[CORE] {msg}")
                self.recorder.record(ing, EVENT_WARNING, 'MonitorRuleNotFound', msg)
                continue
            rule_data.health_mon = mon

    def notify_unused(self, ing, rules_map):
        for paths in rules_map.values():
            for rule_data in paths.values():
                # Entries without a monitor were never meant to be assigned
                if rule_data.health_mon is not None and not rule_data.assigned:
                    msg = f"Health Monitor path {rule_data.health_mon.path} does not match any Ingress paths."
                    self.recorder.record(ing, EVENT_WARNING, 'MonitorRuleNotUsed', msg)

    def bind(self, vs_name, ing, monitors, single_service):
        """
        Binds the monitors of an Ingress to the pools of the named virtual.

        Returns the host -> path -> RuleData map used for binding.
        """
        if single_service:
            rules_map = self.single_service_map(ing)
        else:
            rules_map = self.multi_service_map(ing)
        self.assign_health_monitors_by_path(ing, rules_map, monitors)

        with self.resources.lock:
            cfg = self.resources.get_by_name(vs_name)
            if cfg is None:
                return rules_map
            if single_service:
                self._bind_single_service(cfg, rules_map)
            else:
                self._bind_multi_service(cfg, rules_map)

        self.notify_unused(ing, rules_map)
        return rules_map

    def _bind_single_service(self, cfg, rules_map):
        if not cfg.virtual.pool_name:
            return
        for paths in rules_map.values():
            for rule_data in paths.values():
                if rule_data.health_mon is not None:
                    assign_monitor_to_pool(cfg, cfg.virtual.pool_name, rule_data)

    def _bind_multi_service(self, cfg, rules_map):
        policy = cfg.find_policy(cfg.get_name())
        if policy is None:
            return
        for host, paths in rules_map.items():
            for path, rule_data in paths.items():
                # Every rule has an entry, not necessarily a monitor
                if rule_data.health_mon is None:
                    continue
                for rule in policy.rules:
                    rule_host, rule_path = split_rule_uri(rule.full_uri)
                    if (host == '*' or host == rule_host) and path == rule_path:
                        for action in rule.actions:
                            if action.forward and action.pool:
                                assign_monitor_to_pool(cfg, action.pool, rule_data)
