import logging
import threading
from urllib.parse import urlsplit

from .errors import RuleConfigError
from .resources import Action, Condition, Rule, join_path

URL_REWRITE_RULE_PREFIX = 'url-rewrite-rule-'
APP_ROOT_REDIRECT_RULE_PREFIX = 'app-root-redirect-rule-'
APP_ROOT_FORWARD_RULE_PREFIX = 'app-root-forward-rule-'

_ANNOTATION_RULE_PREFIXES = (
    URL_REWRITE_RULE_PREFIX,
    APP_ROOT_REDIRECT_RULE_PREFIX,
    APP_ROOT_FORWARD_RULE_PREFIX,
)


def is_annotation_rule(rule_name):
    """Rules injected by the url-rewrite and app-root annotations."""
    return rule_name.startswith(_ANNOTATION_RULE_PREFIXES)


def is_wildcard_uri(uri):
    return uri.startswith('*.')


def _host_condition(host):
    if is_wildcard_uri(host):
        return Condition(name='0', host=True, http_host=True, ends_with=True, values=[host[1:]])
    return Condition(name='0', host=True, http_host=True, equals=True, values=[host])


def create_rule(uri, pool_name, partition, rule_name):
    """
    Builds a forwarding rule matching a host+path URI.

    The host becomes an equality condition (an ends-with condition for '*.'
    hosts) and every path segment an indexed path-segment condition.
    """
    if any(c.isspace() or ord(c) < 0x20 or ord(c) == 0x7f for c in uri):
        raise RuleConfigError(f"invalid character in rule URI '{uri}'")

    target = uri[:-1] if uri.endswith('/') else uri
    try:
        parts = urlsplit(f"scheme://{target}")
        # Accessing the port validates the authority section
        parts.port
    except ValueError as e:
        raise RuleConfigError(f"unable to parse rule URI '{uri}': {e}") from e

    conditions = []
    if parts.netloc:
        conditions.append(_host_condition(parts.netloc))
    if parts.path:
        for i, segment in enumerate(parts.path.lstrip('/').split('/'), 1):
            conditions.append(Condition(
                name=str(i), index=i, http_uri=True, path_segment=True, equals=True, values=[segment]))

    action = Action(name='0', forward=True, pool=join_path(partition, pool_name))
    return Rule(name=rule_name, full_uri=uri, conditions=conditions, actions=[action])


def _split_host_path(value):
    slash = value.find('/')
    if slash == -1:
        return value, ''
    return value[:slash], value[slash:]


def _rule_suffix(value):
    return value.strip('/').replace('/', '_') or 'root'


def process_url_rewrite(target, value):
    """
    Builds the rule rewriting requests for 'host/path' target to 'host/path' value.

    Returns None when the value names neither a host nor a path.
    """
    target_host, target_path = _split_host_path(target)
    value_host, value_path = _split_host_path(value)
    if not value_host and not value_path:
        return None

    conditions = []
    if target_host:
        conditions.append(_host_condition(target_host))
    if target_path and target_path != '/':
        conditions.append(Condition(
            name=str(len(conditions)), http_uri=True, path=True, starts_with=True, values=[target_path]))

    actions = []
    if value_host:
        actions.append(Action(name=str(len(actions)), replace=True, http_host=True, value=value_host))
    if value_path:
        actions.append(Action(
            name=str(len(actions)), replace=True, http_uri=True, path=target_path or '/', value=value_path))

    return Rule(
        name=f"{URL_REWRITE_RULE_PREFIX}{_rule_suffix(target)}",
        full_uri=target,
        conditions=conditions,
        actions=actions,
    )


def process_app_root(target, value, pool):
    """
    Builds the app-root rule pair for a host.

    The first rule redirects requests for '/' to the app root, the second
    forwards the app root itself to the pool.
    """
    host, _ = _split_host_path(target)
    suffix = _rule_suffix(f"{host}{value}")

    redirect_conditions = []
    forward_conditions = []
    if host:
        redirect_conditions.append(_host_condition(host))
        forward_conditions.append(_host_condition(host))
    redirect_conditions.append(Condition(
        name=str(len(redirect_conditions)), http_uri=True, path=True, equals=True, values=['/']))
    forward_conditions.append(Condition(
        name=str(len(forward_conditions)), http_uri=True, path=True, equals=True, values=[value]))

    redirect_rule = Rule(
        name=f"{APP_ROOT_REDIRECT_RULE_PREFIX}{suffix}",
        full_uri=f"{host}/",
        conditions=redirect_conditions,
        actions=[Action(name='0', redirect=True, http_reply=True, location=value)],
    )
    forward_rule = Rule(
        name=f"{APP_ROOT_FORWARD_RULE_PREFIX}{suffix}",
        full_uri=f"{host}{value}",
        conditions=forward_conditions,
        actions=[Action(name='0', forward=True, pool=pool)],
    )
    return [redirect_rule, forward_rule]


def run_pair(first, second):
    """Runs two callables on their own threads and returns both results once both finish."""
    results = [None, None]
    failures = []

    def runner(index, fn):
        try:
            results[index] = fn()
        except Exception as e:
            failures.append(e)

    threads = [threading.Thread(target=runner, args=(i, fn)) for i, fn in enumerate((first, second))]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    if failures:
        raise failures[0]
    return results[0], results[1]


def _ranked(rules, first_ordinal):
    def rank():
        ordered = sorted(rules, key=lambda rule: rule.full_uri, reverse=True)
        for ordinal, rule in enumerate(ordered, first_ordinal):
            rule.ordinal = ordinal
        return ordered
    return rank


def source_range_condition(source_ranges):
    return Condition(name='0', tcp=True, address=True, matches=True, values=list(source_ranges))


def place_redirects(rules):
    """
    Moves each app-root redirect directly ahead of the forwarding rule with the same URI.

    A forwarding rule for 'host/' matches every path of the host, so under
    first-match it would shadow the redirect of '/'.
    """
    for redirect in [r for r in rules if r.name.startswith(APP_ROOT_REDIRECT_RULE_PREFIX)]:
        uri = redirect.full_uri.rstrip('/')
        target = next((r for r in rules if not is_annotation_rule(r.name) and r.full_uri.rstrip('/') == uri), None)
        if target is None:
            continue
        rules.remove(redirect)
        rules.insert(rules.index(target), redirect)
    for ordinal, rule in enumerate(rules):
        rule.ordinal = ordinal
    return rules


def compile_rules(literal, wildcard, app_root_rules=(), url_rewrite_rules=(), source_ranges=(), parallel=False):
    """
    Orders draft rules and assigns their ordinals.

    Literal rules come first, then '*.' wildcard rules, each bucket ranked by
    descending full URI. App-root and url-rewrite rules follow in the order
    they were built, except that an app-root redirect goes right before a
    forwarding rule with the same URI. Source ranges become an extra
    condition on every rule.
    """
    rank_literal = _ranked(literal, 0)
    rank_wildcard = _ranked(wildcard, len(literal))
    if parallel:
        ranked_literal, ranked_wildcard = run_pair(rank_literal, rank_wildcard)
    else:
        ranked_literal, ranked_wildcard = rank_literal(), rank_wildcard()

    rules = ranked_literal + ranked_wildcard
    for rule in list(app_root_rules) + list(url_rewrite_rules):
        rule.ordinal = len(rules)
        rules.append(rule)
    place_redirects(rules)

    if source_ranges:
        # A separate rule would be skipped by first-match, so every rule carries the condition
        for rule in rules:
            rule.conditions.append(source_range_condition(source_ranges))
    return rules


def sort_rules(rules):
    """
    Re-sorts a whole policy in place and renumbers it 0..n-1.

    Uses the same ordering as compile_rules; annotation rules keep their
    relative order at the end unless place_redirects moves a redirect.
    Sorting an already sorted list changes nothing.
    """
    literal = [r for r in rules if not is_annotation_rule(r.name) and not is_wildcard_uri(r.full_uri)]
    wildcard = [r for r in rules if not is_annotation_rule(r.name) and is_wildcard_uri(r.full_uri)]
    injected = [r for r in rules if is_annotation_rule(r.name)]
    literal.sort(key=lambda r: r.full_uri, reverse=True)
    wildcard.sort(key=lambda r: r.full_uri, reverse=True)

    rules[:] = literal + wildcard + injected
    return place_redirects(rules)


class MergedRuleRegistry:
    """
    Records which annotation rule was folded into which forwarding rule, per virtual.

    Shared by every virtual so identical injected targets coming from different
    Ingresses resolve to the same forwarding rule.
    """

    def __init__(self):
        self._merged = {}
        self._lock = threading.Lock()

    def record(self, vs_name, injected_name, target_name):
        with self._lock:
            self._merged.setdefault(vs_name, {})[injected_name] = target_name

    def target_of(self, vs_name, injected_name):
        with self._lock:
            return self._merged.get(vs_name, {}).get(injected_name)

    def forget(self, vs_name):
        with self._lock:
            self._merged.pop(vs_name, None)

    def merged(self, vs_name):
        with self._lock:
            return dict(self._merged.get(vs_name, {}))


def _fold(injected, target):
    added = False
    for action in injected.actions:
        if any(action.same_effect(existing) for existing in target.actions):
            continue
        target.actions.append(Action(**{**vars(action), 'name': str(len(target.actions))}))
        added = True
    return added


def merge_rules(cfg, registry):
    """
    Folds url-rewrite and app-root forward rules into the forwarding rule with the same URI.

    Redirect rules stay separate and are ranked by place_redirects.
    Folding is idempotent.
    """
    vs_name = cfg.get_name()
    for policy in cfg.policies:
        for injected in list(policy.rules):
            if not injected.name.startswith((URL_REWRITE_RULE_PREFIX, APP_ROOT_FORWARD_RULE_PREFIX)):
                continue
            target = None
            known = registry.target_of(vs_name, injected.name)
            for rule in policy.rules:
                if is_annotation_rule(rule.name):
                    continue
                if rule.name == known or rule.full_uri == injected.full_uri:
                    target = rule
                    break
            if target is None:
                continue
            if _fold(injected, target):
                logging.debug(f"[CORE] Merged rule {injected.name} into {target.name}")
            policy.rules.remove(injected)
            registry.record(vs_name, injected.name, target.name)
