"""Job execution runtime: the per-job runner and the child process supervisor."""
