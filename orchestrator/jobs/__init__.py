"""Analysis jobs: store, submission service and background workers."""
