import logging
import os

import requests

CONFIG_ENDPOINT = '/api/v1/config'


class LoadBalancerAgentClient:
    def __init__(self, base_url, username, password, verify=False):
        """
        Initializes the load balancer agent API client.

        Args:
            base_url (str): The base URL of the agent API.
            username (str): The user for basic authentication.
            password (str): The password for basic authentication.
            verify (bool): Whether to verify the SSL certificate. Defaults to False.
        """
        self.base_url = base_url
        self.auth = (username, password)
        self.session = requests.Session()
        self.session.verify = verify

    def post(self, endpoint, data=None):
        """
        Sends a POST request to the agent API.

        Args:
            endpoint (str): The API endpoint to call.
            data (dict, optional): The JSON data to include in the request body. Defaults to None.

        Returns:
            dict: The JSON response from the API.
        """
        url = f"{self.base_url}{endpoint}"
        response = self.session.post(url, auth=self.auth, json=data)
        response.raise_for_status()
        return response.json()


def from_env():
    """
    Creates a LoadBalancerAgentClient instance from environment variables.
    """
    base_url = os.getenv("LB_AGENT_URL")
    username = os.getenv("LB_AGENT_USERNAME")
    password = os.getenv("LB_AGENT_PASSWORD")

    if not all([base_url, username, password]):
        raise ValueError("LB_AGENT_URL, LB_AGENT_USERNAME, and LB_AGENT_PASSWORD must be set")

    verify = os.getenv("LB_AGENT_VERIFY_TLS", "false").lower() in ("1", "true", "yes")
    return LoadBalancerAgentClient(base_url, username, password, verify=verify)


class ConfigDeployer:
    """Pushes the whole resource store to the load balancer agent."""

    def __init__(self, agent_client, resources, tls_engine):
        self.agent_client = agent_client
        self.resources = resources
        self.tls_engine = tls_engine

    def snapshot(self):
        with self.resources.lock:
            document = {'resources': self.resources.snapshot()}
        document.update(self.tls_engine.snapshot())
        return document

    def deploy_resource(self):
        """
        Sends the current store state to the agent. Called with the store lock released.
        """
        document = self.snapshot()
        logging.info(f"Deploying {len(document['resources'])} virtual server configs...")
        try:
            self.agent_client.post(CONFIG_ENDPOINT, document)
        except Exception as e:
            logging.error(f"Failed to deploy configuration: {e}")
