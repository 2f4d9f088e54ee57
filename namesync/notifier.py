"""
Row-change triggers that publish on a LISTEN/NOTIFY channel.

Every watched table gets an AFTER INSERT/UPDATE/DELETE row trigger calling
notify_changes(). The payload carries the table name, the operation and the
new/old row images with heavy JSON columns stripped. When that would still
exceed the transport limit only the row identity is sent and the listener
re-reads the rest.
"""
from __future__ import annotations
import logging
import re
from typing import List

from sqlalchemy import text
from sqlalchemy.engine import Engine

log = logging.getLogger(__name__)

FUNCTION_NAME = "notify_changes"
STRIPPED_COLUMNS = ("order_data", "metadata")

_IDENT = re.compile(r"^[a-z_][a-z0-9_]*$")


def _ident(name: str) -> str:
    if not _IDENT.match(name):
        raise ValueError(f"unsafe identifier: {name!r}")
    return name


def trigger_name(table: str) -> str:
    return f"{_ident(table)}_notify_changes"


def function_sql(channel: str, max_payload_bytes: int) -> str:
    _ident(channel)
    strip = " ".join(f"- '{c}'" for c in STRIPPED_COLUMNS)
    return f"""
CREATE OR REPLACE FUNCTION {FUNCTION_NAME}() RETURNS trigger AS $$
DECLARE
  new_row jsonb;
  old_row jsonb;
  payload text;
BEGIN
  IF TG_OP <> 'DELETE' THEN
    new_row := to_jsonb(NEW) {strip};
  END IF;
  IF TG_OP <> 'INSERT' THEN
    old_row := to_jsonb(OLD) {strip};
  END IF;

  payload := json_build_object(
    'table', TG_TABLE_NAME,
    'operation', TG_OP,
    'data', new_row,
    'old_data', old_row,
    'truncated', false
  )::text;

  IF octet_length(payload) >= {int(max_payload_bytes)} THEN
    payload := json_build_object(
      'table', TG_TABLE_NAME,
      'operation', TG_OP,
      'data', CASE WHEN new_row IS NULL THEN NULL
                   ELSE jsonb_build_object('id', new_row->'id', 'ens_name_id', new_row->'ens_name_id') END,
      'old_data', CASE WHEN old_row IS NULL THEN NULL
                       ELSE jsonb_build_object('id', old_row->'id', 'ens_name_id', old_row->'ens_name_id') END,
      'truncated', true
    )::text;
  END IF;

  BEGIN
    PERFORM pg_notify('{channel}', payload);
  EXCEPTION WHEN OTHERS THEN
    RAISE WARNING '{FUNCTION_NAME}: pg_notify failed on %: %', TG_TABLE_NAME, SQLERRM;
  END;

  RETURN COALESCE(NEW, OLD);
END;
$$ LANGUAGE plpgsql;
""".strip()


def trigger_sql(table: str) -> List[str]:
    t = _ident(table)
    name = trigger_name(t)
    return [
        f"DROP TRIGGER IF EXISTS {name} ON {t}",
        f"CREATE TRIGGER {name} AFTER INSERT OR UPDATE OR DELETE ON {t} "
        f"FOR EACH ROW EXECUTE FUNCTION {FUNCTION_NAME}()",
    ]


def install_sql(tables: List[str], channel: str, max_payload_bytes: int) -> List[str]:
    stmts = [function_sql(channel, max_payload_bytes)]
    for t in tables:
        stmts.extend(trigger_sql(t))
    return stmts


def install_triggers(engine: Engine, tables: List[str], channel: str, max_payload_bytes: int = 7500) -> int:
    if engine.dialect.name != "postgresql":
        raise RuntimeError("change triggers require PostgreSQL")
    with engine.begin() as conn:
        for stmt in install_sql(tables, channel, max_payload_bytes):
            conn.execute(text(stmt))
    log.info("installed change triggers on %s (channel=%s)", ",".join(tables), channel)
    return len(tables)


def remove_triggers(engine: Engine, tables: List[str]) -> None:
    with engine.begin() as conn:
        for t in tables:
            conn.execute(text(f"DROP TRIGGER IF EXISTS {trigger_name(t)} ON {_ident(t)}"))
        conn.execute(text(f"DROP FUNCTION IF EXISTS {FUNCTION_NAME}()"))
    log.info("removed change triggers from %s", ",".join(tables))
