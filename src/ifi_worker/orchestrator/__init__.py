"""Job orchestration: queue dispatch, stage pipeline and pull-request delivery."""
