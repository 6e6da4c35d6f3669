"""Job orchestration: persisted state, phase bookkeeping and the orchestrator."""
