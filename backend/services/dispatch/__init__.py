"""
Dispatch Services Module

Call lifecycle, unit assignment and the dispatch protocol engine.
All functions take a request-scoped SQLAlchemy Session; each public
operation is one unit of work (commit on success, rollback on failure).

Usage:
    from services.dispatch.lifecycle import create_call, update_call, close_call
    from services.dispatch.assignment import assign_units, release_units
    from services.dispatch.protocol import evaluate_protocol
"""
