"""
Annotation keys understood by the controller and their parsing.

All recognised annotations of an Ingress are parsed once, up front, into an
immutable IngressAnnotations value. Parse problems are collected in its
`errors` list so the caller can report them a single time.
"""
import json
import logging
from dataclasses import dataclass, field

from .errors import AnnotationError
from .resources import DEFAULT_BALANCE, DEFAULT_HTTP_PORT, DEFAULT_HTTPS_PORT, DEFAULT_PARTITION

ANNOTATION_PREFIX = 'virtual-server.ingress-lb.io'

BIND_ADDR_ANNOTATION = f'{ANNOTATION_PREFIX}/ip'
PARTITION_ANNOTATION = f'{ANNOTATION_PREFIX}/partition'
BALANCE_ANNOTATION = f'{ANNOTATION_PREFIX}/balance'
HTTP_PORT_ANNOTATION = f'{ANNOTATION_PREFIX}/http-port'
HTTPS_PORT_ANNOTATION = f'{ANNOTATION_PREFIX}/https-port'
HEALTH_ANNOTATION = f'{ANNOTATION_PREFIX}/health'
URL_REWRITE_ANNOTATION = f'{ANNOTATION_PREFIX}/rewrite-target-url'
APP_ROOT_ANNOTATION = f'{ANNOTATION_PREFIX}/rewrite-app-root'
WHITELIST_SOURCE_RANGE_ANNOTATION = f'{ANNOTATION_PREFIX}/whitelist-source-range'
ALLOW_SOURCE_RANGE_ANNOTATION = f'{ANNOTATION_PREFIX}/allow-source-range'
CLIENT_SSL_ANNOTATION = f'{ANNOTATION_PREFIX}/clientssl'
SERVER_SSL_ANNOTATION = f'{ANNOTATION_PREFIX}/serverssl'

SSL_REDIRECT_ANNOTATION = 'ingress.kubernetes.io/ssl-redirect'
ALLOW_HTTP_ANNOTATION = 'ingress.kubernetes.io/allow-http'
INGRESS_CLASS_ANNOTATION = 'kubernetes.io/ingress.class'
DEFAULT_INGRESS_CLASS_ANNOTATION = 'ingressclass.kubernetes.io/is-default-class'

CONTROLLER_DEFAULT_ADDR = 'controller-default'
# Key used for an untargeted app-root / url-rewrite value
SINGLE_VALUE_KEY = 'single'

_TRUE_VALUES = ('1', 't', 'T', 'TRUE', 'true', 'True')
_FALSE_VALUES = ('0', 'f', 'F', 'FALSE', 'false', 'False')


def parse_bool(value):
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ValueError(f"'{value}' is not a boolean")


def get_boolean_annotation(annotations, key, default, errors=None):
    """Reads a boolean annotation, falling back to the default when absent or malformed."""
    if not annotations or key not in annotations:
        return default
    try:
        return parse_bool(annotations[key])
    except ValueError as e:
        if errors is not None:
            errors.append(AnnotationError(key, str(e)))
        else:
            logging.error(f"[CORE] Unable to parse boolean annotation {key}: {e}")
        return default


def parse_port(annotations, key, default, errors):
    """
    Reads a port annotation.

    A malformed value yields 0 rather than the default; the problem is still
    reported through `errors`.
    """
    if key not in annotations:
        return default
    try:
        return int(annotations[key].strip())
    except ValueError:
        errors.append(AnnotationError(key, f"'{annotations[key]}' is not a port number, using 0"))
        return 0


def parse_app_root_url_rewrite(annotation, key=URL_REWRITE_ANNOTATION, errors=None):
    """
    Parses 'target=value[,target=value...]' into a map.

    A value without '=' is an untargeted value stored under SINGLE_VALUE_KEY.
    """
    values = {}
    if ',' in annotation:
        for item in annotation.split(','):
            if item.count('=') != 1:
                if errors is not None:
                    errors.append(AnnotationError(key, f"entry '{item}' must be of the form target=value"))
                continue
            target, value = item.split('=')
            values[target.strip()] = value.strip()
    elif annotation.count('=') == 1:
        target, value = annotation.split('=')
        values[target.strip()] = value.strip()
    elif '=' not in annotation:
        values[SINGLE_VALUE_KEY] = annotation.strip()
    elif errors is not None:
        errors.append(AnnotationError(key, f"'{annotation}' must be of the form target=value"))
    return values


def parse_source_ranges(annotation):
    return [r.strip() for r in annotation.split(',') if r.strip()]


@dataclass(frozen=True)
class HealthMonitorSpec:
    path: str
    send: str = ''
    recv: str = ''
    interval: int = 0
    timeout: int = 0
    type: str = 'http'


def parse_health_monitors(annotation):
    try:
        raw = json.loads(annotation)
    except json.JSONDecodeError as e:
        raise AnnotationError(HEALTH_ANNOTATION, f"not a JSON array: {e}") from e
    if not isinstance(raw, list):
        raise AnnotationError(HEALTH_ANNOTATION, "expected a JSON array of monitors")

    monitors = []
    for item in raw:
        if not isinstance(item, dict) or not item.get('path'):
            raise AnnotationError(HEALTH_ANNOTATION, f"monitor entry {item!r} has no path")
        monitors.append(HealthMonitorSpec(
            path=item['path'],
            send=item.get('send', ''),
            recv=item.get('recv', ''),
            interval=int(item.get('interval', 0)),
            timeout=int(item.get('timeout', 0)),
            type=item.get('type') or 'http',
        ))
    return monitors


def parse_client_ssl_profiles(annotation):
    """Parses '[{"profile": "partition/name"}, ...]' into profile names."""
    try:
        raw = json.loads(annotation)
    except json.JSONDecodeError as e:
        raise AnnotationError(CLIENT_SSL_ANNOTATION, f"not a JSON array: {e}") from e
    if not isinstance(raw, list) or not all(isinstance(p, dict) and p.get('profile') for p in raw):
        raise AnnotationError(CLIENT_SSL_ANNOTATION, 'expected a JSON array of {"profile": "partition/name"}')
    return [p['profile'] for p in raw]


def _valid_rewrite_targets(values, errors):
    valid = {}
    for target, value in values.items():
        if not value:
            errors.append(AnnotationError(URL_REWRITE_ANNOTATION, f"no rewrite value for target '{target}'"))
            continue
        valid[target] = value
    return valid


def _valid_app_roots(values, errors):
    valid = {}
    for target, value in values.items():
        if not value.startswith('/'):
            errors.append(AnnotationError(APP_ROOT_ANNOTATION, f"app root '{value}' must start with '/'"))
            continue
        valid[target] = value
    return valid


@dataclass(frozen=True)
class IngressAnnotations:
    bind_addr: str = None
    partition: str = DEFAULT_PARTITION
    balance: str = DEFAULT_BALANCE
    http_port: int = DEFAULT_HTTP_PORT
    https_port: int = DEFAULT_HTTPS_PORT
    ssl_redirect: bool = True
    allow_http: bool = False
    ingress_class: str = None
    client_ssl: str = ''
    client_ssl_profiles: tuple = None
    server_ssl: str = None
    url_rewrite: dict = field(default_factory=dict)
    app_root: dict = field(default_factory=dict)
    source_ranges: tuple = ()
    health_monitors: tuple = ()
    errors: tuple = ()

    @classmethod
    def parse(cls, annotations):
        annotations = annotations or {}
        errors = []

        client_ssl = annotations.get(CLIENT_SSL_ANNOTATION, '')
        client_ssl_profiles = None
        if client_ssl:
            try:
                client_ssl_profiles = tuple(parse_client_ssl_profiles(client_ssl))
            except AnnotationError as e:
                errors.append(e)

        health_monitors = ()
        if HEALTH_ANNOTATION in annotations:
            try:
                health_monitors = tuple(parse_health_monitors(annotations[HEALTH_ANNOTATION]))
            except AnnotationError as e:
                errors.append(e)

        url_rewrite = {}
        if URL_REWRITE_ANNOTATION in annotations:
            url_rewrite = _valid_rewrite_targets(
                parse_app_root_url_rewrite(annotations[URL_REWRITE_ANNOTATION], URL_REWRITE_ANNOTATION, errors),
                errors)

        app_root = {}
        if APP_ROOT_ANNOTATION in annotations:
            app_root = _valid_app_roots(
                parse_app_root_url_rewrite(annotations[APP_ROOT_ANNOTATION], APP_ROOT_ANNOTATION, errors),
                errors)

        # whitelist-source-range takes precedence over allow-source-range
        source_ranges = ()
        if WHITELIST_SOURCE_RANGE_ANNOTATION in annotations:
            source_ranges = tuple(parse_source_ranges(annotations[WHITELIST_SOURCE_RANGE_ANNOTATION]))
        elif ALLOW_SOURCE_RANGE_ANNOTATION in annotations:
            source_ranges = tuple(parse_source_ranges(annotations[ALLOW_SOURCE_RANGE_ANNOTATION]))

        return cls(
            bind_addr=annotations.get(BIND_ADDR_ANNOTATION),
            partition=annotations.get(PARTITION_ANNOTATION, DEFAULT_PARTITION),
            balance=annotations.get(BALANCE_ANNOTATION, DEFAULT_BALANCE),
            http_port=parse_port(annotations, HTTP_PORT_ANNOTATION, DEFAULT_HTTP_PORT, errors),
            https_port=parse_port(annotations, HTTPS_PORT_ANNOTATION, DEFAULT_HTTPS_PORT, errors),
            ssl_redirect=get_boolean_annotation(annotations, SSL_REDIRECT_ANNOTATION, True, errors),
            allow_http=get_boolean_annotation(annotations, ALLOW_HTTP_ANNOTATION, False, errors),
            ingress_class=annotations.get(INGRESS_CLASS_ANNOTATION),
            client_ssl=client_ssl,
            client_ssl_profiles=client_ssl_profiles,
            server_ssl=annotations.get(SERVER_SSL_ANNOTATION),
            url_rewrite=url_rewrite,
            app_root=app_root,
            source_ranges=source_ranges,
            health_monitors=health_monitors,
            errors=tuple(errors),
        )

    @classmethod
    def from_ingress(cls, ing):
        return cls.parse(ing.metadata.annotations)
