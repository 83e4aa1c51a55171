import logging
from dataclasses import replace

from ..annotations import BIND_ADDR_ANNOTATION, IngressAnnotations
from ..clients.events import EVENT_NORMAL, EVENT_WARNING
from ..errors import DNSResolutionError, RuleConfigError
from ..ingress_class import IngressClassFilter
from ..merge import merge_config, remove_ingress
from ..monitors import HealthMonitorBinder
from ..ports import has_tls, virtual_ports
from ..resources import Resources, format_ingress_vs_name
from ..rules import MergedRuleRegistry
from ..status import IngressStatusWriter
from ..synthesizer import ingress_key, resolve_bind_addr, synthesize
from ..tls import ServiceFwdRuleMap, SSLContextCache, TLSPolicyEngine

DEFAULT_INGRESS_CLASS = 'lb'
DEFAULT_CONTROLLER_NAME = 'ingress-lb.io/ingress-controller'


class IngressPlugin:
    """
    Reconciles Ingress objects into load balancer virtual server configs.

    Each reconciliation turns one Ingress into a draft per virtual port,
    merges the drafts into the shared store, applies TLS and health monitors,
    and finally triggers a deploy once the store lock is released.
    """

    def __init__(self, cluster_index, recorder, config, resources=None, tls=None,
                 deploy_resource=None, resolver=None):
        self.cluster_index = cluster_index
        self.recorder = recorder
        self.config = config
        self.plugin_id = 'ingress'

        self.default_ip = config.get('defaultIngressIP', '')
        self.snat_pool_name = config.get('snatPoolName', '')
        self.namespaces = set(config.get('namespaces') or [])
        self.parallel = bool(config.get('parallelRuleSort', False))

        self.resources = resources if resources is not None else Resources()
        self.tls = tls if tls is not None else TLSPolicyEngine(SSLContextCache(cluster_index), recorder)
        self.registry = MergedRuleRegistry()
        self.class_filter = IngressClassFilter(
            cluster_index,
            config.get('ingressClass', DEFAULT_INGRESS_CLASS),
            config.get('controllerName', DEFAULT_CONTROLLER_NAME),
        )
        self.monitor_binder = HealthMonitorBinder(self.resources, recorder)
        self.status_writer = IngressStatusWriter(cluster_index, recorder)
        self.deploy_resource = deploy_resource or (lambda: None)
        self.resolver = resolver
        self._pool_only_logged = set()

    @property
    def ssl_context(self):
        return self.tls.ssl_context

    def run(self):
        """
        Reconciles every Ingress in the cluster, then deploys once.
        """
        logging.info(f"Running {self.plugin_id} plugin reconciliation...")
        try:
            ingresses = self.cluster_index.list_ingresses()
        except Exception as e:
            logging.error(f"Error getting Ingress resources: {e}")
            return

        for ing in ingresses:
            self.sync_ingress(ing, deploy=False)
        self.deploy_resource()

    def handle_event(self, event_type, ing):
        if event_type == 'DELETED':
            self.delete_ingress(ing)
        else:
            self.sync_ingress(ing)

    def _watched(self, ing):
        return not self.namespaces or ing.metadata.namespace in self.namespaces

    def sync_ingress(self, ing, deploy=True):
        """
        Reconciles one Ingress. Returns True when the Ingress is owned and was processed.
        """
        if not self._watched(ing):
            return False

        key = ingress_key(ing)
        if not self.class_filter.manages(ing):
            logging.debug(f"[CORE] Ingress {key} is not owned by this controller")
            if remove_ingress(self.resources, key, self.registry):
                self.tls.drop_redirect_entries(key)
                if deploy:
                    self.deploy_resource()
            return False

        annotations = IngressAnnotations.from_ingress(ing)
        for error in annotations.errors:
            logging.warning(f"[CORE] {error}")
            self.recorder.record(ing, EVENT_WARNING, 'InvalidData', str(error))

        if self.resolver is not None and annotations.bind_addr is None:
            try:
                annotations = replace(annotations, bind_addr=self.resolve_ingress_host(ing))
            except DNSResolutionError as e:
                logging.warning(str(e))
                self.recorder.record(ing, EVENT_WARNING, 'DNSResolutionError', str(e))
                return False

        self.ssl_context.prepare(ing)

        fwd_rules_map = ServiceFwdRuleMap()
        emitted = set()
        for vport in virtual_ports(annotations, has_tls(ing, annotations)):
            try:
                draft = synthesize(ing, annotations, vport, self.cluster_index,
                                   default_ip=self.default_ip, parallel=self.parallel)
            except RuleConfigError as e:
                logging.error(f"[CORE] Ingress {key} port {vport.port}: {e}")
                # Leave what this port contributed before in place
                emitted.add(format_ingress_vs_name(resolve_bind_addr(annotations, self.default_ip), vport.port))
                continue
            emitted.add(draft.virtual_name)

            with self.resources.lock:
                is_new = self.resources.get_by_name(draft.virtual_name) is None
                cfg = merge_config(self.resources, draft, self.registry, self.snat_pool_name)
                if cfg is None:
                    continue
                if not draft.bind_addr and is_new and draft.virtual_name not in self._pool_only_logged:
                    self._pool_only_logged.add(draft.virtual_name)
                    logging.info(f"[CORE] No virtual address for {draft.virtual_name}, "
                                 f"creating pools only for Ingress {key}")
                self.tls.handle_ingress_tls(cfg, ing, annotations, fwd_rules_map)

            if annotations.health_monitors:
                self.monitor_binder.bind(draft.virtual_name, ing, annotations.health_monitors, draft.single_service)
            if cfg.virtual.bind_addr:
                self.status_writer.set_status(ing, cfg)

        remove_ingress(self.resources, key, self.registry, keep=emitted)
        self.tls.set_redirect_entries(key, fwd_rules_map)
        if deploy:
            self.deploy_resource()
        return True

    def delete_ingress(self, ing):
        key = ingress_key(ing)
        changed = remove_ingress(self.resources, key, self.registry)
        self.tls.drop_redirect_entries(key)
        if changed:
            logging.info(f"[CORE] Removed Ingress {key} from {', '.join(changed)}")
            self.deploy_resource()
        return changed

    def resolve_ingress_host(self, ing):
        """
        Resolves the first host of an Ingress and persists the address as its bind address annotation.

        Raises DNSResolutionError when there is no host or it cannot be resolved.
        """
        name = ing.metadata.name
        if not ing.spec.rules:
            raise DNSResolutionError(f"No host found for DNS resolution on Ingress {name}")
        host = ing.spec.rules[0].host
        if not host:
            raise DNSResolutionError(f"First host is empty on Ingress {name}; cannot resolve.")

        ip_address = self.resolver.resolve(host)

        if ing.metadata.annotations is None:
            ing.metadata.annotations = {}
        ing.metadata.annotations[BIND_ADDR_ANNOTATION] = ip_address
        try:
            self.cluster_index.update_ingress(ing)
        except Exception as e:
            msg = f"Error while setting virtual-server IP for Ingress {name}: {e}"
            logging.warning(msg)
            self.recorder.record(ing, EVENT_WARNING, 'IPAnnotationError', msg)
        else:
            msg = f"Resolved host {host} as {ip_address}; set {BIND_ADDR_ANNOTATION} annotation with address."
            logging.info(msg)
            self.recorder.record(ing, EVENT_NORMAL, 'HostResolvedSuccessfully', msg)
        return ip_address
