"""
Content processing pipeline: state machine, stage handlers and transport.
"""
