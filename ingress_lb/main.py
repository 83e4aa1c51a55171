import os
import logging
import yaml
import threading
import time
from dotenv import load_dotenv
from kubernetes import client, config, watch
from ingress_lb.clients.agent import ConfigDeployer, from_env as agent_from_env
from ingress_lb.clients.events import EventRecorder
from ingress_lb.clients.kube import ClusterIndex
from ingress_lb.plugins.ingress import IngressPlugin
from ingress_lb.resolver import HostResolver
from ingress_lb.resources import Resources
from ingress_lb.tls import SSLContextCache, TLSPolicyEngine
from .version import __version__

# --- Configuration ---
load_dotenv()
logging.basicConfig(level=os.getenv('LOG_LEVEL', 'INFO').upper(), format='%(asctime)s - %(levelname)s - %(message)s')

# --- Helper Functions ---
def get_controller_config(k8s_core_v1_api):
    """
    Fetches and parses the controller's ConfigMap from the cluster.
    """
    namespace = os.getenv('CONTROLLER_NAMESPACE', 'kube-system')
    name = os.getenv('CONTROLLER_CONFIGMAP', 'kubernetes-lb-ingress-controller')
    logging.info(f"Attempting to load configuration from ConfigMap: {namespace}/{name}")

    try:
        cm = k8s_core_v1_api.read_namespaced_config_map(name, namespace)
        config_yaml = (cm.data or {}).get('config')
        if not config_yaml:
            logging.error(f"ConfigMap '{name}' does not have a 'config' key.")
            return None

        return yaml.safe_load(config_yaml)

    except client.ApiException as e:
        if e.status == 404:
            logging.error(f"ConfigMap '{name}' not found in namespace '{namespace}'.")
        else:
            logging.error(f"Error reading ConfigMap: {e}")
        return None
    except yaml.YAMLError as e:
        logging.error(f"Error parsing ConfigMap YAML: {e}")
        return None

# --- Watcher Threads ---
def watch_ingresses(list_func, plugin):
    """Reconciles one Ingress per watch event."""
    w = watch.Watch()
    logging.info("Starting to watch for ingress events...")
    for event in w.stream(list_func):
        ing = event['object']
        logging.info(f"Event: {event['type']} on ingress {ing.metadata.namespace}/{ing.metadata.name}")
        try:
            plugin.handle_event(event['type'], ing)
        except Exception as e:
            logging.error(f"Error reconciling ingress {ing.metadata.namespace}/{ing.metadata.name}: {e}")

def watch_resources(list_func, resource_type, plugin):
    """Re-syncs every Ingress when a resource they depend on changes."""
    w = watch.Watch()
    logging.info(f"Starting to watch for {resource_type} events...")
    for event in w.stream(list_func):
        logging.info(f"Event: {event['type']} on {resource_type}")
        plugin.run()

# --- Initialization ---
def main():
    logging.info(f"Starting Kubernetes LB Ingress Controller {__version__}")

    try:
        config.load_incluster_config()
    except config.ConfigException:
        config.load_kube_config()

    k8s_core_v1 = client.CoreV1Api()
    k8s_networking_v1 = client.NetworkingV1Api()

    controller_config = get_controller_config(k8s_core_v1)
    if not controller_config:
        logging.error("Could not load controller configuration. Exiting.")
        return

    ingress_config = controller_config.get('ingress', {})
    if not ingress_config.get('enabled', False):
        logging.error("Ingress reconciliation is not enabled in the controller configuration. Exiting.")
        return

    cluster_index = ClusterIndex(k8s_core_v1, k8s_networking_v1)
    recorder = EventRecorder(k8s_core_v1)
    resources = Resources()
    tls = TLSPolicyEngine(SSLContextCache(cluster_index), recorder)

    deploy_resource = None
    if controller_config.get('agent', {}).get('enabled', True):
        try:
            agent_client = agent_from_env()
            logging.info("Load balancer agent client initialized.")
        except ValueError as e:
            logging.error(f"Failed to initialize load balancer agent client: {e}")
            return
        deploy_resource = ConfigDeployer(agent_client, resources, tls).deploy_resource

    resolver = None
    if ingress_config.get('resolveIngressNames'):
        resolver = HostResolver(ingress_config['resolveIngressNames'])

    plugin = IngressPlugin(cluster_index, recorder, ingress_config, resources=resources, tls=tls,
                           deploy_resource=deploy_resource, resolver=resolver)

    # --- Initial Reconciliation ---
    logging.info("Performing initial reconciliation...")
    plugin.run()

    # --- Main Controller Loop ---
    threads = [
        threading.Thread(target=watch_ingresses, args=(k8s_networking_v1.list_ingress_for_all_namespaces, plugin), daemon=True),
        threading.Thread(target=watch_resources, args=(k8s_core_v1.list_service_for_all_namespaces, 'service', plugin), daemon=True),
        threading.Thread(target=watch_resources, args=(k8s_core_v1.list_secret_for_all_namespaces, 'secret', plugin), daemon=True),
    ]

    for t in threads:
        t.start()

    try:
        while True:
            time.sleep(60)
    except KeyboardInterrupt:
        logging.info("Shutting down controller...")

    logging.info("Controller shut down.")

if __name__ == '__main__':
    main()
