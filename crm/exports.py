"""
Spreadsheet ledgers.

Three independent workbooks under EXPORT_DIR, each grown one row at a time:
AUTO / НДЗ call results, calls handed to kupat, and the per-day stats log
(one sheet per day). Workbooks and sheets are created with headers on first
use. Appends for one workbook are serialized with the same Redis lock the
document store uses.
"""

import logging
from pathlib import Path

from django.conf import settings
from openpyxl import Workbook, load_workbook

from call_center import redis as locks
from call_center.utils import now_local_str, date_part, time_part
from .models import EXPORT_SHEET_AUTO, EXPORT_SHEET_NDZ

logger = logging.getLogger(__name__)

AUTO_NDZ_FILE = 'export_auto_ndz.xlsx'
KUPAT_FILE = 'export_kupat.xlsx'
STATS_FILE = 'stats_by_day.xlsx'

KUPAT_SHEET = 'KUPAT'

AUTO_NDZ_HEADERS = ['Дата', 'Время', 'Оператор', 'Имя', 'Телефон', 'ТЗ', 'Адрес', 'Возраст', 'Доп.Инфа', 'Заметка']
KUPAT_HEADERS = ['Дата', 'Время', 'Оператор', 'Имя', 'Телефон', 'Комментарий']
STATS_HEADERS = ['Time', 'Login', 'Role', 'Action', 'Phone', 'Extra']

AUTO_NDZ_SHEETS = {EXPORT_SHEET_AUTO: AUTO_NDZ_HEADERS, EXPORT_SHEET_NDZ: AUTO_NDZ_HEADERS}
KUPAT_SHEETS = {KUPAT_SHEET: KUPAT_HEADERS}


def workbook_path(file_name):
    return Path(settings.EXPORT_DIR) / file_name


def _new_workbook(sheets):
    workbook = Workbook()
    workbook.remove(workbook.active)
    for sheet_name, headers in sheets.items():
        workbook.create_sheet(sheet_name).append(headers)
    return workbook


def _export_lock(file_name):
    return locks.collection_lock(f"export:{file_name}")


def ensure_workbook(file_name, sheets):
    """Create the workbook with its header rows if it does not exist yet."""
    path = workbook_path(file_name)
    with _export_lock(file_name):
        if not path.is_file():
            path.parent.mkdir(parents=True, exist_ok=True)
            _new_workbook(sheets).save(path)
            logger.info(f"Created export workbook {path}")
    return path


def append_row(file_name, sheet_name, headers, row, sheets=None):
    """
    Append one row under the export lock.

    A missing workbook is created with `sheets` (all sheets of the ledger),
    or with just the target sheet when none are given.
    """
    path = workbook_path(file_name)
    with _export_lock(file_name):
        if path.is_file():
            workbook = load_workbook(path)
        else:
            path.parent.mkdir(parents=True, exist_ok=True)
            workbook = _new_workbook(sheets or {sheet_name: headers})
            logger.info(f"Created export workbook {path}")

        if sheet_name in workbook.sheetnames:
            sheet = workbook[sheet_name]
        else:
            sheet = workbook.create_sheet(sheet_name)
            sheet.append(headers)

        sheet.append(['' if value is None else str(value) for value in row])
        workbook.save(path)
    return path


# ============================================================================
# LEDGERS
# ============================================================================

def ensure_auto_ndz_workbook():
    return ensure_workbook(AUTO_NDZ_FILE, AUTO_NDZ_SHEETS)


def ensure_kupat_workbook():
    return ensure_workbook(KUPAT_FILE, KUPAT_SHEETS)


def ensure_stats_workbook():
    return ensure_workbook(STATS_FILE, {date_part(now_local_str()): STATS_HEADERS})


def append_auto_ndz(kind, payload):
    sheet_name = EXPORT_SHEET_AUTO if kind == EXPORT_SHEET_AUTO else EXPORT_SHEET_NDZ
    stamp = now_local_str()
    return append_row(AUTO_NDZ_FILE, sheet_name, AUTO_NDZ_HEADERS, sheets=AUTO_NDZ_SHEETS, row=[
        date_part(stamp),
        time_part(stamp),
        payload.get('operator'),
        payload.get('name'),
        payload.get('phone'),
        payload.get('tz'),
        payload.get('address'),
        payload.get('age'),
        payload.get('extra'),
        payload.get('note'),
    ])


def append_kupat(payload):
    stamp = now_local_str()
    return append_row(KUPAT_FILE, KUPAT_SHEET, KUPAT_HEADERS, sheets=KUPAT_SHEETS, row=[
        date_part(stamp),
        time_part(stamp),
        payload.get('operator'),
        payload.get('name'),
        payload.get('phone'),
        payload.get('note'),
    ])


def append_stats_event(event):
    sheet_name = date_part(event.get('ts')) or 'unknown'
    return append_row(STATS_FILE, sheet_name, STATS_HEADERS, [
        time_part(event.get('ts')),
        event.get('login'),
        event.get('role'),
        event.get('action'),
        event.get('phone'),
        event.get('extra'),
    ])


def read_rows(file_name, sheet_name):
    """All rows of one sheet, header included."""
    path = workbook_path(file_name)
    if not path.is_file():
        return []
    workbook = load_workbook(path, read_only=True)
    try:
        if sheet_name not in workbook.sheetnames:
            return []
        return [list(row) for row in workbook[sheet_name].iter_rows(values_only=True)]
    finally:
        workbook.close()
