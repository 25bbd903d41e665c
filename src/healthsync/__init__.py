"""HealthStack sync engine.

Moves health samples from a device data source into a remote gateway
through a durable local ledger:

    acquisition/ — sample sources (Apple Health export, in-memory)
    ledger/      — durable samples + sync history (Postgres, in-memory)
    delivery/    — gateway client and Retry Queue
    sync/        — orchestrator, status stream, background + cleanup schedulers
"""
