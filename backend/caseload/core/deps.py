from functools import lru_cache

from fastapi import Depends
from sqlalchemy.orm import Session

from caseload.db.session import SessionLocal
from caseload.services.coordination import Coordinator, RedisCoordinator, make_redis_client
from caseload.services.queue import BrokerMonitor, ImportQueue

def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

@lru_cache
def _redis_coordinator() -> RedisCoordinator:
    return RedisCoordinator(make_redis_client())

@lru_cache
def _broker_monitor() -> BrokerMonitor:
    # shared so the last broker state survives between requests
    return BrokerMonitor()

def get_coordinator() -> Coordinator:
    return _redis_coordinator()

def get_broker_monitor() -> BrokerMonitor:
    return _broker_monitor()

def get_import_queue(
    db: Session = Depends(get_db),
    coordinator: Coordinator = Depends(get_coordinator),
    monitor: BrokerMonitor = Depends(get_broker_monitor),
) -> ImportQueue:
    return ImportQueue(db, coordinator, monitor=monitor)
