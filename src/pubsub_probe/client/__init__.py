"""
Client-side transport components.
This package provides the `Session` interface the probe drives and its
`aiomqtt` implementation.
"""
