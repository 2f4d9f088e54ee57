import pytest

from namesync.notifier import function_sql, install_sql, install_triggers, trigger_name


def test_function_strips_heavy_columns_and_bounds_payload():
    sql = function_sql("ens_changes", 7500)
    assert "CREATE OR REPLACE FUNCTION notify_changes()" in sql
    assert "- 'order_data' - 'metadata'" in sql
    assert "octet_length(payload) >= 7500" in sql
    assert "pg_notify('ens_changes', payload)" in sql
    # a failed notify must not abort the writing transaction
    assert "EXCEPTION WHEN OTHERS" in sql and "RAISE WARNING" in sql


def test_install_sql_covers_every_table():
    stmts = install_sql(["ens_names", "listings", "offers"], "ens_changes", 7500)
    assert len(stmts) == 1 + 2 * 3
    assert stmts[1] == "DROP TRIGGER IF EXISTS ens_names_notify_changes ON ens_names"
    assert "AFTER INSERT OR UPDATE OR DELETE ON listings" in stmts[4]
    assert trigger_name("offers") == "offers_notify_changes"


@pytest.mark.parametrize("bad", ["ens-names", "listings; drop table users", "Offers"])
def test_identifiers_are_checked(bad):
    with pytest.raises(ValueError):
        install_sql([bad], "ens_changes", 7500)


def test_channel_is_checked():
    with pytest.raises(ValueError):
        function_sql("chan'; select 1; --", 7500)


def test_install_requires_postgres(store):
    with pytest.raises(RuntimeError):
        install_triggers(store.engine, ["listings"], "ens_changes")
