"""Apply computed tag memberships to the store."""

import logging

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tag_explorer.db import insert_ignore
from tag_explorer.exceptions import PersistenceError
from tag_explorer.models.stock import Stock
from tag_explorer.models.tag import StockTag, Tag

logger = logging.getLogger(__name__)

# Keep IN (...) lists and multi-row VALUES under SQLite's variable limit
CHUNK_SIZE = 400


def _chunks(items: list, size: int = CHUNK_SIZE):
    for start in range(0, len(items), size):
        yield items[start:start + size]


def get_or_create_tag(session: Session, name: str, family: str) -> Tag:
    """Return the tag called ``name``, creating it with ``family`` if absent.

    An existing tag keeps the family it was created with. Use
    ``reassign_tag_family`` to change it deliberately.
    """
    tag = session.scalar(select(Tag).where(Tag.name == name))
    if tag is None:
        tag = Tag(name=name, family=family)
        session.add(tag)
        session.flush()
        logger.info(f"Created tag '{name}' ({family})")
    elif tag.family != family:
        logger.warning(
            f"Tag '{name}' belongs to family '{tag.family}', not '{family}'; keeping '{tag.family}'"
        )
    return tag


def reassign_tag_family(session: Session, name: str, family: str) -> Tag:
    """Administrative change of a tag's family."""
    tag = session.scalar(select(Tag).where(Tag.name == name))
    if tag is None:
        raise LookupError(f"No tag named '{name}'")
    if tag.family != family:
        logger.warning(f"Reassigning tag '{name}' from family '{tag.family}' to '{family}'")
        tag.family = family
        session.flush()
    return tag


def _existing_tickers(session: Session, tickers: list[str]) -> list[str]:
    found = set()
    for chunk in _chunks(tickers):
        found.update(session.scalars(select(Stock.ticker).where(Stock.ticker.in_(chunk))).all())
    return sorted(found)


def apply_tag(session: Session, name: str, family: str, tickers: list[str], replace: bool = True) -> int:
    """Make ``name``'s associations match ``tickers``.

    With ``replace`` (dynamic families) every existing association of the tag
    is deleted first, so the result is exactly ``tickers``. Without it the
    tickers are only added. Pairs that already exist are ignored, so calling
    this twice with the same input leaves the same rows. An empty list still
    creates the tag, leaving it visible with zero members.

    Returns the number of tickers associated by this call.
    """
    unique = sorted({t.upper() for t in tickers})
    try:
        with session.begin_nested():
            tag = get_or_create_tag(session, name, family)
            if replace:
                session.execute(delete(StockTag).where(StockTag.tag_id == tag.id))

            valid = _existing_tickers(session, unique) if unique else []
            missing = len(unique) - len(valid)
            if missing:
                logger.warning(f"Tag '{name}': {missing} tickers not in stock table, skipped")

            for chunk in _chunks(valid):
                insert_ignore(session, StockTag, [{"ticker": t, "tag_id": tag.id} for t in chunk])
            session.flush()
    except SQLAlchemyError as e:
        raise PersistenceError(f"Failed to apply tag '{name}': {e}", tag=name) from e

    if valid:
        logger.info(f"Applied tag '{name}' to {len(valid)} stocks")
    else:
        logger.info(f"No stocks qualify for tag '{name}'")
    return len(valid)


def apply_family(
    session: Session,
    family: str,
    tag_map: dict[str, list[str]],
    replace: bool = True,
) -> tuple[dict[str, int], list[dict]]:
    """Apply every tag of one family. A failing tag does not stop the others.

    Returns ``({tag_name: applied_count}, [error dicts])``.
    """
    applied = {}
    errors = []
    for name, tickers in tag_map.items():
        try:
            applied[name] = apply_tag(session, name, family, tickers, replace=replace)
        except PersistenceError as e:
            logger.error(str(e))
            errors.append(e.to_dict())
    return applied, errors
