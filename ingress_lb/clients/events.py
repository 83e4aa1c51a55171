import logging
from datetime import datetime, timezone

from kubernetes import client

EVENT_NORMAL = 'Normal'
EVENT_WARNING = 'Warning'


class EventRecorder:
    def __init__(self, k8s_core_v1_api, component='ingress-lb-controller'):
        self.k8s_core_v1_api = k8s_core_v1_api
        self.component = component

    def record(self, ing, event_type, reason, message):
        """
        Records a Kubernetes event on an Ingress, in the Ingress's namespace.

        Failures are logged; recording an event never fails a reconciliation.
        """
        namespace = ing.metadata.namespace
        name = ing.metadata.name
        now = datetime.now(timezone.utc)
        event = client.CoreV1Event(
            metadata=client.V1ObjectMeta(generate_name=f"{name}.", namespace=namespace),
            involved_object=client.V1ObjectReference(
                api_version='networking.k8s.io/v1',
                kind='Ingress',
                name=name,
                namespace=namespace,
                uid=ing.metadata.uid,
                resource_version=ing.metadata.resource_version,
            ),
            reason=reason,
            message=message,
            type=event_type,
            count=1,
            first_timestamp=now,
            last_timestamp=now,
            source=client.V1EventSource(component=self.component),
        )
        try:
            self.k8s_core_v1_api.create_namespaced_event(namespace, event)
        except client.ApiException as e:
            logging.error(f"Failed to record event {reason} for Ingress {namespace}/{name}: {e}")
