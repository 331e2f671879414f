"""
The probe itself: heartbeat models, retry and correlation policies,
the Probe Loop state machine and the command-line entry point.
"""
