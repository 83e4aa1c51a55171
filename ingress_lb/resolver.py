import asyncio
import ipaddress
import logging
import socket

import aiodns

from .errors import DNSResolutionError

LOOKUP = 'LOOKUP'
DEFAULT_DNS_PORT = 53


def parse_dns_server(server):
    """Splits 'server[:port]' ('[v6]:port' for IPv6) into (server, port)."""
    if server.startswith('['):
        host, _, rest = server[1:].partition(']')
        port = rest.lstrip(':')
        return host, int(port) if port.isdigit() else DEFAULT_DNS_PORT
    if server.count(':') == 1:
        host, _, port = server.partition(':')
        if port.isdigit():
            return host, int(port)
        return host, DEFAULT_DNS_PORT
    return server, DEFAULT_DNS_PORT


class HostResolver:
    """
    Resolves Ingress hosts to a virtual address.

    `mode` is either LOOKUP (system resolver) or the address of a DNS server,
    optionally with a port. Resolution blocks the caller.
    """

    def __init__(self, mode):
        self.mode = mode

    def resolve(self, host):
        if self.mode == LOOKUP:
            return self.lookup(host)
        return self.query_server(host)

    def lookup(self, host):
        try:
            infos = socket.getaddrinfo(host, None, proto=socket.IPPROTO_TCP)
        except socket.gaierror as e:
            raise DNSResolutionError(f"Error while resolving host {host}: {e}") from e

        addresses = []
        for info in infos:
            address = info[4][0]
            if address not in addresses:
                addresses.append(address)
        if not addresses:
            raise DNSResolutionError(f"No results for host {host}")
        if len(addresses) > 1:
            logging.warning(f"Resolved multiple IP addresses for host '{host}', choosing first resolved address.")
        return addresses[0]

    def query_server(self, host):
        server, port = parse_dns_server(self.mode)
        try:
            ipaddress.ip_address(server)
        except ValueError:
            # The DNS server is itself a hostname
            server = self.lookup(server)

        try:
            answers = asyncio.run(self._query(host, server, port))
        except aiodns.error.DNSError as e:
            raise DNSResolutionError(f"Error while resolving host {host} using DNS server {self.mode} : {e}") from e
        if not answers:
            raise DNSResolutionError(f"No results for host {host} using DNS server {self.mode}")
        return answers[0].host

    async def _query(self, host, server, port):
        resolver = aiodns.DNSResolver(nameservers=[server], udp_port=port, tcp_port=port)
        return await resolver.query(host, 'A')
