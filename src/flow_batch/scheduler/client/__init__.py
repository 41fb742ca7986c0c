"""Remote flow service clients."""

from flow_batch.scheduler.client.base import RemoteInvocationClient
from flow_batch.scheduler.client.echo_client import EchoFlowClient
from flow_batch.scheduler.client.http_client import FlowApiClient

__all__ = [
    "EchoFlowClient",
    "FlowApiClient",
    "RemoteInvocationClient",
]
