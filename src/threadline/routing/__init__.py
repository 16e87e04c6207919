"""Thread selection: strategies, orchestration and the decision log."""
