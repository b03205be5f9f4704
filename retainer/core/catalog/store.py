from __future__ import annotations

import json
import time
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from retainer.core.audit.hasher import GENESIS_HASH, compute_hash
from retainer.core.catalog.models import CatalogVersion, RecordCategory, RetentionRule
from retainer.core.errors import CatalogPublishError, UnknownCategoryError
from retainer.core.storage.sqlite import Database
from retainer.core.timeutil import iso


RuleInput = Union[RecordCategory, Mapping[str, Any]]


class PolicyCatalog:
    """
    Versioned category -> retention rule mapping (append-only).

    Versions are hash chained like the audit log so a rewritten historical version is detectable.
    Reads always go to the table: the catalog is read-mostly and safe to share across workers.
    """

    def __init__(
        self,
        db: Database,
        *,
        logger: Any = None,
        default_consent_grace_days: float = 30.0,
        default_anonymize_after_days: float = 30.0,
        now: Any = None,
    ):
        self.db = db
        self.logger = logger
        self.default_consent_grace_days = float(default_consent_grace_days)
        self.default_anonymize_after_days = float(default_anonymize_after_days)
        self._now = now or time.time
        self._init_db()

    def _init_db(self) -> None:
        with self.db.transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS catalog_versions (
                  version INTEGER PRIMARY KEY,
                  effective_at REAL NOT NULL,
                  rules_json TEXT NOT NULL,
                  published_at REAL NOT NULL,
                  published_by TEXT,
                  notes TEXT,
                  prev_hash TEXT NOT NULL,
                  hash TEXT NOT NULL
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_catalog_effective ON catalog_versions(effective_at)")

    # ---- helpers ----
    @staticmethod
    def _from_row(r: Any) -> CatalogVersion:
        raw = json.loads(r["rules_json"] or "{}")
        return CatalogVersion(
            version=int(r["version"]),
            effective_at=float(r["effective_at"]),
            rules={k: RecordCategory.model_validate(v) for k, v in raw.items()},
            published_at=float(r["published_at"]),
            published_by=str(r["published_by"] or ""),
            notes=str(r["notes"] or ""),
            prev_hash=str(r["prev_hash"]),
            hash=str(r["hash"]),
        )

    def _rule(self, cat: RecordCategory, v: CatalogVersion) -> RetentionRule:
        return RetentionRule(
            category=cat,
            catalog_version=v.version,
            effective_at=v.effective_at,
            default_consent_grace_days=self.default_consent_grace_days,
            default_anonymize_after_days=self.default_anonymize_after_days,
        )

    # ---- publish ----
    def publish(
        self,
        rules: Iterable[RuleInput],
        *,
        effective_at: Optional[float] = None,
        published_by: str = "system",
        notes: str = "",
    ) -> CatalogVersion:
        cats: Dict[str, RecordCategory] = {}
        for r in rules:
            cat = r if isinstance(r, RecordCategory) else RecordCategory.model_validate(dict(r))
            if cat.name in cats:
                raise CatalogPublishError(f"Duplicate category '{cat.name}'.", category=cat.name)
            cats[cat.name] = cat
        if not cats:
            raise CatalogPublishError("A catalog version needs at least one category.")
        now = float(self._now())
        eff = float(effective_at) if effective_at is not None else now

        with self.db.transaction() as conn:
            row = conn.execute("SELECT * FROM catalog_versions ORDER BY version DESC LIMIT 1").fetchone()
            latest = self._from_row(row) if row else None
            if latest is not None:
                if eff <= latest.effective_at:
                    raise CatalogPublishError(
                        f"Effective date {iso(eff)} must be strictly after version {latest.version} ({iso(latest.effective_at)}).",
                        version=latest.version,
                    )
                # Removal must be deliberate: a category disappears only after a version marked it sunset.
                missing = sorted(name for name, cat in latest.rules.items() if name not in cats and not cat.sunset)
                if missing:
                    raise CatalogPublishError(
                        f"Categories removed without a sunset marker: {', '.join(missing)}.",
                        categories=missing,
                    )
            prev = latest.hash if latest is not None else GENESIS_HASH
            v = CatalogVersion(
                version=(latest.version + 1) if latest is not None else 1,
                effective_at=eff,
                rules=cats,
                published_at=now,
                published_by=str(published_by or "system"),
                notes=str(notes or ""),
                prev_hash=prev,
            )
            v = v.model_copy(update={"hash": compute_hash(prev, v.hash_payload())})
            conn.execute(
                "INSERT INTO catalog_versions(version, effective_at, rules_json, published_at, published_by, notes, prev_hash, hash) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    v.version,
                    v.effective_at,
                    json.dumps({k: c.model_dump(mode="json") for k, c in v.rules.items()}, sort_keys=True),
                    v.published_at,
                    v.published_by,
                    v.notes,
                    v.prev_hash,
                    v.hash,
                ),
            )
        if self.logger:
            self.logger.info(f"Policy catalog version {v.version} published ({len(cats)} categories, effective {iso(eff)}).")
        return v

    def seed(self, rules: Iterable[RuleInput], *, effective_at: float = 0.0) -> Optional[CatalogVersion]:
        """Publish `rules` as version 1 when the catalog is empty; no-op otherwise."""
        if self.versions():
            return None
        return self.publish(rules, effective_at=effective_at, published_by="seed", notes="initial catalog")

    # ---- lookups ----
    def versions(self) -> List[CatalogVersion]:
        with self.db.read() as conn:
            rows = conn.execute("SELECT * FROM catalog_versions ORDER BY version ASC").fetchall()
        return [self._from_row(r) for r in rows]

    def current_version(self, as_of: Optional[float] = None) -> Optional[CatalogVersion]:
        t = float(self._now() if as_of is None else as_of)
        with self.db.read() as conn:
            row = conn.execute(
                "SELECT * FROM catalog_versions WHERE effective_at <= ? ORDER BY version DESC LIMIT 1",
                (t,),
            ).fetchone()
        return self._from_row(row) if row else None

    def current_rules(self, as_of: Optional[float] = None) -> Dict[str, RetentionRule]:
        v = self.current_version(as_of)
        if v is None:
            return {}
        return {name: self._rule(cat, v) for name, cat in v.rules.items()}

    def rule_for(self, category: str, as_of: Optional[float] = None) -> RetentionRule:
        """
        Rule governing `category` at `as_of`.

        A category dropped after its sunset keeps being governed by the newest version that
        still defined it; a category no version ever defined is fatal.
        """
        t = float(self._now() if as_of is None else as_of)
        name = str(category or "")
        for v in reversed(self.versions()):
            if v.effective_at > t:
                continue
            cat = v.rules.get(name)
            if cat is not None:
                return self._rule(cat, v)
        raise UnknownCategoryError(f"Category '{name}' is not defined in any policy catalog version.", category=name)

    def is_known(self, category: str) -> bool:
        return any(category in v.rules for v in self.versions())

    def verify_chain(self) -> bool:
        prev = GENESIS_HASH
        for v in self.versions():
            if v.prev_hash != prev or compute_hash(prev, v.hash_payload()) != v.hash:
                return False
            prev = v.hash
        return True
