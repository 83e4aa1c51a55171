import json
import unittest
from unittest.mock import ANY, MagicMock
from ingress_lb.annotations import BIND_ADDR_ANNOTATION, HEALTH_ANNOTATION, IngressAnnotations
from ingress_lb.merge import merge_config
from ingress_lb.monitors import HealthMonitorBinder
from ingress_lb.ports import VirtualPort
from ingress_lb.resources import Resources
from ingress_lb.rules import MergedRuleRegistry
from ingress_lb.synthesizer import synthesize
from tests.k8s_objects import backend, make_cluster_index, make_ingress, rule

VS_NAME = 'ingress_10-0-0-5_80'


def health(*paths):
    return {HEALTH_ANNOTATION: json.dumps([{'path': p, 'send': 'GET / HTTP/1.0', 'interval': 5, 'timeout': 16}
                                           for p in paths])}


class TestHealthMonitorBinder(unittest.TestCase):

    def setUp(self):
        self.resources = Resources()
        self.recorder = MagicMock()
        self.binder = HealthMonitorBinder(self.resources, self.recorder)
        self.cluster_index = make_cluster_index(services=[('default', 'svcA'), ('default', 'svcB')])

    def load(self, ing):
        annotations = IngressAnnotations.from_ingress(ing)
        draft = synthesize(ing, annotations, VirtualPort('http', 80), self.cluster_index)
        merge_config(self.resources, draft, MergedRuleRegistry())
        return annotations.health_monitors

    def multi(self, *paths, rules=None):
        annotations = {BIND_ADDR_ANNOTATION: '10.0.0.5', **health(*paths)}
        rules = rules or [rule('foo.com', [('/a', 'svcA', 80), ('/b', 'svcB', 80)])]
        return make_ingress('ing1', annotations=annotations, rules=rules)

    def test_binds_monitor_to_pool(self):
        ing = self.multi('foo.com/a')
        monitors = self.load(ing)

        rules_map = self.binder.bind(VS_NAME, ing, monitors, False)

        cfg = self.resources.get_by_name(VS_NAME)
        pool_a = cfg.find_pool('ingress_default_svcA_80')
        self.assertEqual(pool_a.monitors, ['/k8s/ingress_default_svcA_80_0_http'])
        self.assertEqual(cfg.find_pool('ingress_default_svcB_80').monitors, [])
        self.assertEqual([(m.name, m.interval, m.timeout) for m in cfg.monitors],
                         [('ingress_default_svcA_80_0_http', 5, 16)])
        self.assertTrue(rules_map['foo.com']['/a'].assigned)
        self.assertFalse(rules_map['foo.com']['/b'].assigned)
        self.recorder.record.assert_not_called()

    def test_binding_is_idempotent(self):
        ing = self.multi('foo.com/a', 'foo.com/b')
        monitors = self.load(ing)

        first = self.binder.bind(VS_NAME, ing, monitors, False)
        before = self.resources.get_by_name(VS_NAME).to_dict()
        second = self.binder.bind(VS_NAME, ing, monitors, False)

        self.assertEqual(self.resources.get_by_name(VS_NAME).to_dict(), before)
        self.assertEqual(
            {(h, p, d.assigned) for h, paths in first.items() for p, d in paths.items()},
            {(h, p, d.assigned) for h, paths in second.items() for p, d in paths.items()},
        )
        for pool in self.resources.get_by_name(VS_NAME).pools:
            self.assertEqual(len(pool.monitors), 1)

    def test_unknown_host_records_event_and_continues(self):
        ing = self.multi('bar.com/a', 'foo.com/b')
        monitors = self.load(ing)

        self.binder.bind(VS_NAME, ing, monitors, False)

        self.recorder.record.assert_called_once_with(ing, 'Warning', 'MonitorRuleNotFound', ANY)
        self.assertEqual(self.resources.get_by_name(VS_NAME).find_pool('ingress_default_svcB_80').monitors,
                         ['/k8s/ingress_default_svcB_80_0_http'])

    def test_malformed_path_records_event(self):
        ing = self.multi('foo.com')
        monitors = self.load(ing)
        self.binder.bind(VS_NAME, ing, monitors, False)
        self.recorder.record.assert_called_once_with(ing, 'Warning', 'MonitorError', ANY)

    def test_unused_monitor(self):
        ing = self.multi('foo.com/c', rules=[rule('foo.com', [('/a', 'svcA', 80), ('/c', 'svcMissing', 80)])])
        monitors = self.load(ing)
        self.binder.bind(VS_NAME, ing, monitors, False)
        self.recorder.record.assert_called_once_with(ing, 'Warning', 'MonitorRuleNotUsed', ANY)

    def test_wildcard_host_conflict(self):
        ing = self.multi('foo.com/a', rules=[
            rule('foo.com', [('/a', 'svcA', 80)]),
            rule(None, [('/b', 'svcB', 80)]),
        ])
        monitors = self.load(ing)
        self.binder.bind(VS_NAME, ing, monitors, False)
        self.recorder.record.assert_called_once_with(ing, 'Warning', 'DuplicatePath', ANY)

    def test_single_service(self):
        ing = make_ingress('ing1', annotations={BIND_ADDR_ANNOTATION: '10.0.0.5', **health('svc.example.com/')},
                           default_backend=backend('svcA'))
        monitors = self.load(ing)

        rules_map = self.binder.bind(VS_NAME, ing, monitors, True)

        self.assertTrue(rules_map['*']['/'].assigned)
        self.assertEqual(self.resources.get_by_name(VS_NAME).pools[0].monitors, ['/k8s/ingress_default_svcA_80_0_http'])

if __name__ == '__main__':
    unittest.main()
