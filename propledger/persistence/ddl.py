from __future__ import annotations


# Mirrors propledger.services.billing.bulk_upsert.normalize_description; keep the two byte-identical.
# translate() folds ASCII only, independent of the database's LC_CTYPE.
NORMALIZE_DESCRIPTION_SQL = r"""
CREATE OR REPLACE FUNCTION normalize_description(value text) RETURNS text
LANGUAGE sql IMMUTABLE AS $$
    SELECT translate(
        btrim(
            regexp_replace(
                regexp_replace(normalize(coalesce(value, ''), NFC), '[\u200B-\u200D\u2060\uFEFF]', '', 'g'),
                '[ \t\n\r\f\v]+', ' ', 'g'
            ),
            ' '
        ),
        'ABCDEFGHIJKLMNOPQRSTUVWXYZ',
        'abcdefghijklmnopqrstuvwxyz'
    )
$$;
"""

NORMALIZE_TRIGGER_FUNCTION_SQL = """
CREATE OR REPLACE FUNCTION invoice_lines_normalize() RETURNS trigger
LANGUAGE plpgsql AS $$
BEGIN
    NEW.normalized_description := normalize_description(NEW.description);
    RETURN NEW;
END;
$$;
"""

NORMALIZE_TRIGGER_SQL = """
CREATE TRIGGER trg_invoice_lines_normalize
    BEFORE INSERT OR UPDATE OF description ON invoice_lines
    FOR EACH ROW EXECUTE FUNCTION invoice_lines_normalize();
"""
