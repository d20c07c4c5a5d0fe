"""Remote sync: store client, merge engine and orchestrator."""
