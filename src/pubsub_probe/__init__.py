"""
pubsub_probe

A long-running liveness probe for a topic-based publish/subscribe broker.
It subscribes once, then publishes an identifying heartbeat every pacing
interval and reports each reply, surviving timeouts and dropped connections
for as long as it is left running.
"""
__version__ = "0.1.0"
