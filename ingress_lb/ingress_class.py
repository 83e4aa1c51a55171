import logging

from kubernetes import client

from .annotations import INGRESS_CLASS_ANNOTATION


class IngressClassFilter:
    """
    Decides whether this controller owns an Ingress.

    The legacy class annotation wins outright, then spec.ingressClassName,
    then the configured class if the cluster marks it as the default.
    """

    def __init__(self, cluster_index, ingress_class, controller_name):
        self.cluster_index = cluster_index
        self.ingress_class = ingress_class
        self.controller_name = controller_name

    def manages(self, ing):
        annotations = ing.metadata.annotations or {}
        if INGRESS_CLASS_ANNOTATION in annotations:
            return annotations[INGRESS_CLASS_ANNOTATION] == self.ingress_class
        if ing.spec is not None and ing.spec.ingress_class_name is not None:
            return self.verify_ingress_class(ing)
        return self.verify_default_ingress_class()

    def _lookup(self, name):
        try:
            return self.cluster_index.get_ingress_class(name)
        except client.ApiException as e:
            logging.error(f"[CORE] Error looking up IngressClass {name}: {e}")
            return None

    def verify_ingress_class(self, ing):
        class_name = ing.spec.ingress_class_name if ing.spec is not None else None
        if class_name is None:
            return False
        ingress_class = self._lookup(class_name)
        if ingress_class is None:
            logging.debug(f"[CORE] IngressClass {class_name} not found")
            return False
        return ingress_class.controller == self.controller_name

    def verify_default_ingress_class(self):
        ingress_class = self._lookup(self.ingress_class)
        if ingress_class is None:
            return False
        return ingress_class.is_default
