# =============================================================================
# Models Package — Pydantic V2 Schemas
# =============================================================================
#   - agents.py: agent enums, invocation input/output, message envelope,
#     plans, and the durable conversation record
#   - memory.py: associative memory records and store/retrieve inputs
# =============================================================================
