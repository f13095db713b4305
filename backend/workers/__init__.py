# Workers: separate processes that use DB as shared state.
# Run from backend/ with:
#   python -m workers.auto_reposition_worker
#   python -m workers.position_sync_worker
