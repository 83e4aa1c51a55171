import unittest
from ingress_lb.annotations import (
    ALLOW_HTTP_ANNOTATION,
    CLIENT_SSL_ANNOTATION,
    HTTPS_PORT_ANNOTATION,
    SSL_REDIRECT_ANNOTATION,
    IngressAnnotations,
)
from ingress_lb.ports import VirtualPort, has_tls, virtual_ports
from tests.k8s_objects import backend, make_ingress


class TestVirtualPorts(unittest.TestCase):

    def test_no_tls_is_http_only(self):
        for annotations in ({}, {SSL_REDIRECT_ANNOTATION: 'false'}, {ALLOW_HTTP_ANNOTATION: 'true'}):
            ports = virtual_ports(IngressAnnotations.parse(annotations), False)
            self.assertEqual(ports, [VirtualPort('http', 80)])

    def test_tls_defaults_to_both(self):
        ports = virtual_ports(IngressAnnotations.parse({}), True)
        self.assertEqual(ports, [VirtualPort('http', 80), VirtualPort('https', 443)])

    def test_tls_allow_http_without_redirect(self):
        annotations = IngressAnnotations.parse({SSL_REDIRECT_ANNOTATION: 'false', ALLOW_HTTP_ANNOTATION: 'true'})
        self.assertEqual([p.protocol for p in virtual_ports(annotations, True)], ['http', 'https'])

    def test_tls_https_only(self):
        annotations = IngressAnnotations.parse({
            SSL_REDIRECT_ANNOTATION: 'false',
            ALLOW_HTTP_ANNOTATION: 'false',
            HTTPS_PORT_ANNOTATION: '8443',
        })
        self.assertEqual(virtual_ports(annotations, True), [VirtualPort('https', 8443)])

    def test_has_tls(self):
        plain = make_ingress(default_backend=backend('svcA'))
        self.assertFalse(has_tls(plain, IngressAnnotations.parse({})))

        with_secret = make_ingress(default_backend=backend('svcA'), tls=[('secret', ['a.com'])])
        self.assertTrue(has_tls(with_secret, IngressAnnotations.parse({})))

        profiles = IngressAnnotations.parse({CLIENT_SSL_ANNOTATION: '[{"profile": "Common/clientssl"}]'})
        self.assertTrue(has_tls(plain, profiles))

if __name__ == '__main__':
    unittest.main()
