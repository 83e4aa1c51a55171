import unittest
from ingress_lb.annotations import (
    APP_ROOT_ANNOTATION,
    BALANCE_ANNOTATION,
    BIND_ADDR_ANNOTATION,
    URL_REWRITE_ANNOTATION,
    IngressAnnotations,
)
from ingress_lb.errors import RuleConfigError
from ingress_lb.merge import merge_config, remove_ingress
from ingress_lb.ports import VirtualPort
from ingress_lb.resources import Resources
from ingress_lb.rules import MergedRuleRegistry
from ingress_lb.synthesizer import resolve_bind_addr, synthesize
from tests.k8s_objects import backend, make_cluster_index, make_ingress, rule

VS_NAME = 'ingress_10-0-0-5_80'
HTTP = VirtualPort('http', 80)


class TestMergeConfig(unittest.TestCase):

    def setUp(self):
        self.resources = Resources()
        self.registry = MergedRuleRegistry()
        self.cluster_index = make_cluster_index(services=[
            ('default', 'svcA'), ('default', 'svcB'), ('default', 'svcC'),
        ])

    def merge(self, ing):
        draft = synthesize(ing, IngressAnnotations.from_ingress(ing), HTTP, self.cluster_index)
        return merge_config(self.resources, draft, self.registry)

    def single(self, name, service, **annotations):
        return make_ingress(name, annotations={BIND_ADDR_ANNOTATION: '10.0.0.5', **annotations},
                            default_backend=backend(service))

    def multi(self, name, paths, host=None, **annotations):
        return make_ingress(name, annotations={BIND_ADDR_ANNOTATION: '10.0.0.5', **annotations},
                            rules=[rule(host, paths)])

    def test_single_service(self):
        cfg = self.merge(self.single('ing1', 'svcA'))

        self.assertEqual(cfg.get_name(), VS_NAME)
        self.assertEqual([(p.service_name, p.service_port) for p in cfg.pools], [('svcA', 80)])
        self.assertEqual(cfg.virtual.pool_name, '/k8s/ingress_default_svcA_80')
        self.assertEqual(cfg.policies, [])
        self.assertEqual(cfg.virtual.bind_addr, '10.0.0.5')
        self.assertEqual(cfg.virtual.source_addr_translation, {'type': 'automap'})
        self.assertIs(self.resources.get_by_name(VS_NAME), cfg)

    def test_two_paths(self):
        cfg = self.merge(self.multi('ing1', [('/a', 'svcA', 80), ('/b', 'svcB', 80)]))

        rules = cfg.policies[0].rules
        self.assertEqual([(r.full_uri, r.ordinal) for r in rules], [('/b', 0), ('/a', 1)])
        self.assertEqual(len(cfg.pools), 2)
        self.assertEqual(cfg.virtual.pool_name, '')

    def test_second_ingress_shares_virtual(self):
        self.merge(self.multi('ing1', [('/a', 'svcA', 80), ('/b', 'svcB', 80)]))
        cfg = self.merge(self.multi('ing2', [('/c', 'svcC', 80)]))

        self.assertEqual(len(cfg.pools), 3)
        rules = cfg.policies[0].rules
        self.assertEqual([r.full_uri for r in rules], ['/c', '/b', '/a'])
        self.assertEqual([r.ordinal for r in rules], [0, 1, 2])
        self.assertEqual(sorted(cfg.meta_data.sources), ['default/ing1', 'default/ing2'])

    def test_second_single_service_is_refused(self):
        self.merge(self.single('ing1', 'svcA'))
        before = self.resources.get_by_name(VS_NAME).to_dict()

        self.assertIsNone(self.merge(self.single('ing2', 'svcB')))
        self.assertEqual(self.resources.get_by_name(VS_NAME).to_dict(), before)

    def test_multi_service_cannot_join_single_service(self):
        self.merge(self.single('ing1', 'svcA'))
        self.assertIsNone(self.merge(self.multi('ing2', [('/c', 'svcC', 80)])))

    def test_same_pool_twice(self):
        ing = self.multi('ing1', [('/a', 'svcA', 80)])
        self.merge(ing)
        cfg = self.merge(ing)
        self.assertEqual([(p.service_name, p.service_port) for p in cfg.pools], [('svcA', 80)])
        self.assertEqual(len(cfg.policies[0].rules), 1)

    def test_balance_change_updates_pool_in_place(self):
        self.merge(self.multi('ing1', [('/a', 'svcA', 80)]))
        cfg = self.merge(self.multi('ing1', [('/a', 'svcA', 80)], **{BALANCE_ANNOTATION: 'least-connections-member'}))
        self.assertEqual([p.balance for p in cfg.pools], ['least-connections-member'])

    def test_missing_service_is_skipped(self):
        ing = self.multi('ing1', [('/a', 'svcA', 80), ('/x', 'svcMissing', 80)])
        cfg = self.merge(ing)
        self.assertEqual([p.service_name for p in cfg.pools], ['svcA'])
        self.assertEqual([r.full_uri for r in cfg.policies[0].rules], ['/a'])

    def test_resync_prunes_stale_contributions(self):
        self.merge(self.multi('ing1', [('/a', 'svcA', 80), ('/b', 'svcB', 80)]))
        cfg = self.merge(self.multi('ing1', [('/a', 'svcA', 80)]))
        self.assertEqual([p.service_name for p in cfg.pools], ['svcA'])
        self.assertEqual([(r.full_uri, r.ordinal) for r in cfg.policies[0].rules], [('/a', 0)])

    def test_shared_pool_survives_pruning(self):
        self.merge(self.multi('ing1', [('/a', 'svcA', 80)]))
        self.merge(self.multi('ing2', [('/other', 'svcA', 80)]))
        cfg = self.merge(self.multi('ing1', [('/b', 'svcB', 80)]))
        self.assertEqual(sorted(p.service_name for p in cfg.pools), ['svcA', 'svcB'])
        self.assertEqual([r.full_uri for r in cfg.policies[0].rules], ['/other', '/b'])

    def test_wildcard_hosts_rank_after_literal(self):
        self.merge(self.multi('ing1', [('/a', 'svcA', 80)], host='*.foo.com'))
        cfg = self.merge(self.multi('ing2', [('/b', 'svcB', 80)], host='bar.com'))
        self.assertEqual([r.full_uri for r in cfg.policies[0].rules], ['bar.com/b', '*.foo.com/a'])

    def test_url_rewrite_is_merged_into_forwarding_rule(self):
        cfg = self.merge(self.multi('ing1', [('/old', 'svcA', 80)], host='foo.com',
                                    **{URL_REWRITE_ANNOTATION: 'foo.com/old=foo.com/new'}))
        rules = cfg.policies[0].rules
        self.assertEqual(len(rules), 1)
        self.assertTrue(any(a.replace for a in rules[0].actions))
        self.assertTrue(any(a.forward for a in rules[0].actions))

    def test_single_service_app_root(self):
        cfg = self.merge(self.single('ing1', 'svcA', **{APP_ROOT_ANNOTATION: '/home'}))
        self.assertEqual(cfg.virtual.pool_name, '/k8s/ingress_default_svcA_80')
        rules = cfg.policies[0].rules
        self.assertEqual([r.full_uri for r in rules], ['/', '/home'])
        self.assertTrue(rules[0].name.startswith('app-root-redirect-rule-'))
        self.assertTrue(rules[1].name.startswith('app-root-forward-rule-'))

    def test_app_root_redirect_ranks_before_host_rule(self):
        cfg = self.merge(self.multi('ing1', [('/', 'svcA', 80)], host='foo.com',
                                    **{APP_ROOT_ANNOTATION: 'foo.com=/home'}))
        rules = cfg.policies[0].rules
        self.assertEqual([(r.full_uri, r.ordinal) for r in rules],
                         [('foo.com/', 0), ('foo.com/', 1), ('foo.com/home', 2)])
        self.assertTrue(rules[0].name.startswith('app-root-redirect-rule-'))
        self.assertEqual([c.values for c in rules[0].conditions], [['foo.com'], ['/']])
        self.assertTrue(rules[0].actions[0].redirect)
        self.assertTrue(rules[1].actions[0].forward)

        # A re-sync keeps the redirect in front
        cfg = self.merge(self.multi('ing1', [('/', 'svcA', 80)], host='foo.com',
                                    **{APP_ROOT_ANNOTATION: 'foo.com=/home'}))
        self.assertTrue(cfg.policies[0].rules[0].name.startswith('app-root-redirect-rule-'))

    def test_service_on_two_ports_gets_two_pools(self):
        cfg = self.merge(self.multi('ing1', [('/a', 'svcA', 80), ('/b', 'svcA', 8080)]))

        self.assertEqual([(p.name, p.service_port) for p in cfg.pools],
                         [('ingress_default_svcA_80', 80), ('ingress_default_svcA_8080', 8080)])
        self.assertEqual([(r.full_uri, r.actions[0].pool) for r in cfg.policies[0].rules], [
            ('/b', '/k8s/ingress_default_svcA_8080'),
            ('/a', '/k8s/ingress_default_svcA_80'),
        ])

        cfg.remove_pool('ingress_default_svcA_8080')
        self.assertEqual([p.service_port for p in cfg.pools], [80])

    def test_losing_last_pool_deletes_virtual(self):
        ing = self.multi('ing1', [('/a', 'svcA', 80)])
        self.merge(ing)
        self.registry.record(VS_NAME, 'url-rewrite-rule-a', 'rule-a')

        self.cluster_index = make_cluster_index(services=[])
        self.assertIsNone(self.merge(ing))
        self.assertIsNone(self.resources.get_by_name(VS_NAME))
        self.assertEqual(self.registry.merged(VS_NAME), {})

    def test_no_pools_on_first_sync_stores_nothing(self):
        self.cluster_index = make_cluster_index(services=[])
        self.assertIsNone(self.merge(self.multi('ing1', [('/a', 'svcA', 80)])))
        self.assertEqual(len(self.resources), 0)

    def test_no_backend_is_a_rule_error(self):
        ing = make_ingress('ing1', annotations={BIND_ADDR_ANNOTATION: '10.0.0.5'})
        with self.assertRaises(RuleConfigError):
            synthesize(ing, IngressAnnotations.from_ingress(ing), HTTP, self.cluster_index)

    def test_malformed_host_is_a_rule_error(self):
        ing = self.multi('ing1', [('/a', 'svcA', 80)], host='foo.com:bad')
        with self.assertRaises(RuleConfigError):
            synthesize(ing, IngressAnnotations.from_ingress(ing), HTTP, self.cluster_index)
        self.assertEqual(len(self.resources), 0)

    def test_snat_pool(self):
        ing = self.single('ing1', 'svcA')
        draft = synthesize(ing, IngressAnnotations.from_ingress(ing), HTTP, self.cluster_index)
        cfg = merge_config(self.resources, draft, self.registry, snat_pool_name='/Common/snat')
        self.assertEqual(cfg.virtual.source_addr_translation, {'type': 'snat', 'pool': '/Common/snat'})


class TestRemoveIngress(unittest.TestCase):

    def setUp(self):
        self.resources = Resources()
        self.registry = MergedRuleRegistry()
        self.cluster_index = make_cluster_index(services=[
            ('default', 'svcA'), ('default', 'svcB'), ('default', 'svcC'),
        ])
        for name, paths in (('ing1', [('/a', 'svcA', 80), ('/b', 'svcB', 80)]), ('ing2', [('/c', 'svcC', 80)])):
            ing = make_ingress(name, annotations={BIND_ADDR_ANNOTATION: '10.0.0.5'}, rules=[rule(None, paths)])
            draft = synthesize(ing, IngressAnnotations.from_ingress(ing), HTTP, self.cluster_index)
            merge_config(self.resources, draft, self.registry)

    def test_remove_one_contributor(self):
        self.assertEqual(remove_ingress(self.resources, 'default/ing2', self.registry), [VS_NAME])
        cfg = self.resources.get_by_name(VS_NAME)
        self.assertEqual(sorted(p.service_name for p in cfg.pools), ['svcA', 'svcB'])
        self.assertEqual([(r.full_uri, r.ordinal) for r in cfg.policies[0].rules], [('/b', 0), ('/a', 1)])
        self.assertEqual(cfg.meta_data.ing_name, 'ing1')

    def test_remove_last_contributor_deletes_virtual(self):
        remove_ingress(self.resources, 'default/ing1', self.registry)
        remove_ingress(self.resources, 'default/ing2', self.registry)
        self.assertIsNone(self.resources.get_by_name(VS_NAME))

    def test_keep_leaves_virtual_untouched(self):
        self.assertEqual(remove_ingress(self.resources, 'default/ing2', self.registry, keep={VS_NAME}), [])
        self.assertEqual(len(self.resources.get_by_name(VS_NAME).pools), 3)


class TestResolveBindAddr(unittest.TestCase):

    def test_annotation_and_defaults(self):
        self.assertEqual(resolve_bind_addr(IngressAnnotations.parse({BIND_ADDR_ANNOTATION: '10.0.0.9'}), '10.0.0.1'),
                         '10.0.0.9')
        self.assertEqual(
            resolve_bind_addr(IngressAnnotations.parse({BIND_ADDR_ANNOTATION: 'controller-default'}), '10.0.0.1'),
            '10.0.0.1')
        self.assertEqual(resolve_bind_addr(IngressAnnotations.parse({}), '10.0.0.1'), '10.0.0.1')
        self.assertEqual(resolve_bind_addr(IngressAnnotations.parse({}), ''), '')

if __name__ == '__main__':
    unittest.main()
