"""Sprint lifecycle state machine and task migration engine."""
