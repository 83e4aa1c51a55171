import logging
from dataclasses import dataclass

from kubernetes import client

from ..annotations import DEFAULT_INGRESS_CLASS_ANNOTATION, get_boolean_annotation


@dataclass(frozen=True)
class IngressClassInfo:
    name: str
    controller: str
    is_default: bool


class ClusterIndex:
    """
    Lookups and writes against the cluster API.

    Getters return None when the object does not exist.
    """

    def __init__(self, k8s_core_v1_api, k8s_networking_v1_api):
        self.k8s_core_v1_api = k8s_core_v1_api
        self.k8s_networking_v1_api = k8s_networking_v1_api

    def _read(self, kind, read, *args):
        try:
            return read(*args)
        except client.ApiException as e:
            if e.status != 404:
                logging.error(f"Error getting {kind} {'/'.join(reversed(args))}: {e}")
            return None

    def get_service(self, namespace, name):
        return self._read('Service', self.k8s_core_v1_api.read_namespaced_service, name, namespace)

    def get_secret(self, namespace, name):
        return self._read('Secret', self.k8s_core_v1_api.read_namespaced_secret, name, namespace)

    def get_ingress(self, namespace, name):
        return self._read('Ingress', self.k8s_networking_v1_api.read_namespaced_ingress, name, namespace)

    def get_ingress_class(self, name):
        """
        Returns the IngressClass as an IngressClassInfo, or None if it does not exist.

        Errors other than not-found are raised as client.ApiException.
        """
        try:
            ingress_class = self.k8s_networking_v1_api.read_ingress_class(name)
        except client.ApiException as e:
            if e.status == 404:
                return None
            raise
        annotations = ingress_class.metadata.annotations or {}
        return IngressClassInfo(
            name=ingress_class.metadata.name,
            controller=ingress_class.spec.controller if ingress_class.spec else '',
            is_default=get_boolean_annotation(annotations, DEFAULT_INGRESS_CLASS_ANNOTATION, False),
        )

    def list_ingresses(self):
        return self.k8s_networking_v1_api.list_ingress_for_all_namespaces().items

    def update_ingress_status(self, ing):
        return self.k8s_networking_v1_api.replace_namespaced_ingress_status(
            ing.metadata.name, ing.metadata.namespace, ing)

    def update_ingress(self, ing):
        return self.k8s_networking_v1_api.replace_namespaced_ingress(
            ing.metadata.name, ing.metadata.namespace, ing)
