"""Cache state layer.

Every change to an engine's value or status goes through the state
machine in :mod:`pycloudsync.state.policy`, whether it comes from a
remote load, the local fallback, an optimistic write or a realtime push.
"""
