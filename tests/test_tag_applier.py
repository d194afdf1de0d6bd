"""Tests for applying tag memberships to the store."""

import pytest
from sqlalchemy import func, select

from tag_explorer.models.tag import StockTag, Tag
from tag_explorer.services.queries import stocks_for_tag, tags_for_ticker
from tag_explorer.services.tag_applier import apply_family, apply_tag, reassign_tag_family


def _members(db, name):
    with db.reader() as session:
        return sorted(s["ticker"] for s in stocks_for_tag(session, name))


def _pair_count(db):
    with db.reader() as session:
        return session.scalar(select(func.count()).select_from(StockTag))


@pytest.fixture
def universe(add_stocks):
    add_stocks(*[{"ticker": t} for t in ("AAA", "BBB", "CCC", "DDD")])


def test_apply_is_idempotent(db, universe):
    for _ in range(2):
        with db.transaction() as session:
            assert apply_tag(session, "大盘股", "size", ["AAA", "BBB"]) == 2

    assert _members(db, "大盘股") == ["AAA", "BBB"]
    assert _pair_count(db) == 2


def test_replace_removes_stale_associations(db, universe):
    with db.transaction() as session:
        apply_tag(session, "强势上涨", "momentum", ["AAA", "BBB", "CCC"])
    with db.transaction() as session:
        apply_tag(session, "强势上涨", "momentum", ["ccc", "DDD"])

    assert _members(db, "强势上涨") == ["CCC", "DDD"]


def test_empty_list_keeps_tag_with_zero_members(db, universe):
    with db.transaction() as session:
        apply_tag(session, "涨停板", "momentum", ["AAA"])
    with db.transaction() as session:
        assert apply_tag(session, "涨停板", "momentum", []) == 0

    assert _members(db, "涨停板") == []
    with db.reader() as session:
        assert session.scalar(select(Tag).where(Tag.name == "涨停板")) is not None


def test_unknown_tickers_are_ignored(db, universe):
    with db.transaction() as session:
        assert apply_tag(session, "高股息", "valuation", ["AAA", "ZZZZ"]) == 1
    assert _members(db, "高股息") == ["AAA"]


def test_static_family_is_additive(db, universe):
    with db.transaction() as session:
        apply_tag(session, "标普500", "index", ["AAA"], replace=False)
    with db.transaction() as session:
        apply_tag(session, "标普500", "index", ["BBB"], replace=False)

    assert _members(db, "标普500") == ["AAA", "BBB"]


def test_family_is_fixed_at_creation(db, universe):
    with db.transaction() as session:
        apply_tag(session, "价值股", "valuation", ["AAA"])
    with db.transaction() as session:
        apply_tag(session, "价值股", "financial_health", ["BBB"])

    with db.reader() as session:
        assert session.scalar(select(Tag.family).where(Tag.name == "价值股")) == "valuation"


def test_reassign_tag_family(db, universe):
    with db.transaction() as session:
        apply_tag(session, "高贝塔系数", "valuation", ["AAA"])
    with db.transaction() as session:
        reassign_tag_family(session, "高贝塔系数", "financial_health")

    with db.reader() as session:
        assert tags_for_ticker(session, "aaa") == [{"name": "高贝塔系数", "family": "financial_health"}]

    with db.transaction() as session:
        with pytest.raises(LookupError):
            reassign_tag_family(session, "no-such-tag", "size")


def test_apply_family_reports_counts(db, universe):
    with db.transaction() as session:
        applied, errors = apply_family(session, "price", {"高价股": ["AAA"], "中价股": ["BBB", "CCC"], "低价股": []})

    assert applied == {"高价股": 1, "中价股": 2, "低价股": 0}
    assert errors == []
