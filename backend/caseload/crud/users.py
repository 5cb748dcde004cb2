from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from caseload.core.logging import logger
from caseload.db.models.user import User, Role

def get_user_by_login(db: Session, login: str) -> User | None:
    return db.query(User).filter(User.login == login).one_or_none()

def get_user(db: Session, user_id: int) -> User | None:
    return db.query(User).filter(User.id == user_id).one_or_none()

def get_or_create_system_user(db: Session, login: str) -> User:
    u = get_user_by_login(db, login)
    if u:
        return u
    u = User(login=login, full_name="System User", role=Role.system.value, is_active=True)
    db.add(u)
    try:
        db.commit()
    except IntegrityError:
        # another submitter created it first
        db.rollback()
        return get_user_by_login(db, login)
    db.refresh(u)
    logger.info("system_user_created", user_id=u.id, login=login)
    return u

def resolve_submitter(db: Session, user_id: str | None, system_login: str) -> User:
    if user_id and user_id.strip().isdigit():
        u = get_user(db, int(user_id))
        if u and u.is_active:
            return u
        logger.warning("submitter_unknown_using_system_user", user_id=user_id)
    return get_or_create_system_user(db, system_login)
