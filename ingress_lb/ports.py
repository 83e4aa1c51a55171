from collections import namedtuple

VirtualPort = namedtuple('VirtualPort', ['protocol', 'port'])


def has_tls(ing, annotations):
    """An Ingress needs TLS when it has a TLS section or names client SSL profiles."""
    return bool(ing.spec is not None and ing.spec.tls) or bool(annotations.client_ssl)


def virtual_ports(annotations, tls_present):
    """
    Returns the virtual ports an Ingress needs, http first.

    -----------------------------------------------------------------
    | TLS | sslRedirect | allowHttp | Ports                         |
    -----------------------------------------------------------------
    |  F  |      -      |     -     | http                          |
    |  T  |      T      |     -     | http (redirects) and https    |
    |  T  |      F      |     T     | http and https                |
    |  T  |      F      |     F     | https                         |
    -----------------------------------------------------------------
    """
    http = VirtualPort('http', annotations.http_port)
    https = VirtualPort('https', annotations.https_port)
    if not tls_present:
        return [http]
    if annotations.ssl_redirect or annotations.allow_http:
        return [http, https]
    return [https]
