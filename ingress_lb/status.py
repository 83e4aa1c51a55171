import logging
import threading

from kubernetes import client

from .clients.events import EVENT_WARNING
from .resources import split_ip_with_route_domain

# Multi-service Ingresses update the same status concurrently; losing that race is expected
CONFLICT_MESSAGE = 'object has been modified'


class IngressStatusWriter:
    """
    Writes the virtual address back into Ingress status.

    Writes run on a detached daemon thread and are best effort: conflicts with
    concurrent writers are dropped, other failures are logged and recorded as
    events, and nothing is reported back to the reconciliation.
    """

    def __init__(self, cluster_index, recorder):
        self.cluster_index = cluster_index
        self.recorder = recorder

    def set_status(self, ing, cfg):
        """Returns the started thread, or None when the status already carries the address."""
        ip, _ = split_ip_with_route_domain(cfg.virtual.bind_addr)
        lb_ingress = client.V1IngressLoadBalancerIngress(ip=ip)

        if ing.status is None:
            ing.status = client.V1IngressStatus()
        if ing.status.load_balancer is None:
            ing.status.load_balancer = client.V1IngressLoadBalancerStatus()

        entries = ing.status.load_balancer.ingress or []
        if not entries:
            entries.append(lb_ingress)
        elif entries[0].ip != ip:
            entries[0] = lb_ingress
        else:
            return None
        ing.status.load_balancer.ingress = entries

        thread = threading.Thread(target=self.update_status, args=(ing, cfg.get_name()), daemon=True)
        thread.start()
        return thread

    def update_status(self, ing, vs_name):
        if self.cluster_index.get_ingress(ing.metadata.namespace, ing.metadata.name) is None:
            return
        try:
            self.cluster_index.update_ingress_status(ing)
        except Exception as e:
            if CONFLICT_MESSAGE in str(e):
                return
            warning = f"Error when setting Ingress status IP for virtual server {vs_name}:{e}"
            logging.warning(warning)
            self.recorder.record(ing, EVENT_WARNING, 'StatusIPError', warning)
