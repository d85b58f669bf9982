"""
Lead source records.

A lead database is an uploaded spreadsheet kept as a plain document in the
`databases` collection; the dealer reads the phone number from PHONE_COLUMN.
"""

PHONE_COLUMN = 1


def build_database(db_id, name, rows, allow_duplicates=False):
    return {
        'id': db_id,
        'name': name,
        'rows': [list(row) for row in rows],
        'allowDuplicates': bool(allow_duplicates),
    }
