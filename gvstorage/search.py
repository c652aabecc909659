from typing import List

from sqlalchemy import text
from sqlalchemy.orm import Session

from .database import Asset


def rebuild_search_index(db: Session) -> None:
    """Repopulates the full-text index from the assets table."""
    db.execute(text("INSERT INTO assets_fts(assets_fts) VALUES('rebuild')"))
    db.commit()


def _match_expression(query: str) -> str:
    # Each word becomes a quoted FTS5 string, so user input can't inject operators.
    terms = [term.replace('"', '""') for term in query.split()]
    return " ".join(f'"{term}"' for term in terms)


def search_assets(db: Session, query: str, limit: int = 50) -> List[Asset]:
    """Assets whose title or description match every word of `query`, best match first."""
    expression = _match_expression(query)
    if not expression:
        return []
    asset_ids = db.execute(
        text(
            "SELECT assets.id FROM assets_fts "
            "JOIN assets ON assets.rowid = assets_fts.rowid "
            "WHERE assets_fts MATCH :expression ORDER BY assets_fts.rank LIMIT :limit"
        ),
        {"expression": expression, "limit": limit},
    ).scalars().all()
    if not asset_ids:
        return []
    assets_by_id = {a.id: a for a in db.query(Asset).filter(Asset.id.in_(asset_ids)).all()}
    return [assets_by_id[asset_id] for asset_id in asset_ids if asset_id in assets_by_id]
