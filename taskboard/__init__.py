# Task board: tasks + live activity feed, synced against a document store
#
# Components:
#   schema.py      - Data model (Task, ActivityItem, TaskStatus, TaskPriority)
#   store.py       - Remote store adapter interface + SQLite backend
#   local_store.py - Local JSON fallback store
#   retry.py       - Bounded linear-backoff retry for remote writes
#   cache.py       - Synchronization cache (optimistic local state + remote reconciliation)
#   activity.py    - Activity recorder (domain events → feed entries)
#   board.py       - Board view model (UI intents, drag gestures)
#   webhooks.py    - GitHub PR and deployment webhook receivers
#   alerts.py      - Deployment failure alerts (Telegram)
#   app.py         - Application runtime (event loop thread, wiring)
#   server.py      - Flask JSON API + webhook endpoints
