#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
CRUD matrix from an API -> DB operation report.

Reads the JSON written by api_db_analyzer and shows, per table, which
endpoints create / read / update / delete it. Operations carrying a raw
query (@Query / @NativeQuery) are listed under a separate "(query)" row
since their target table is not known statically.

Output:
- console summary (stderr)
- optional Excel workbook with sheets: Endpoints, CRUD_Matrix

Usage:
    api-db-crud-matrix api_db_operations.json
    api-db-crud-matrix api_db_operations.json --xlsx crud_matrix.xlsx
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Dict, List

import openpyxl
from openpyxl.styles import Alignment, Font


CRUD_LETTERS = {
    "INSERT": "C",
    "SELECT": "R",
    "UPDATE": "U",
    "DELETE": "D",
    "QUERY": "Q",
}
CRUD_ORDER = "CRUDQ"
QUERY_ROW = "(query)"


# ---------- Matrix ----------

def build_crud_matrix(report: Dict[str, Any]) -> Dict[str, Dict[str, str]]:
    """table -> endpoint key -> letters (e.g. "CR"), tables sorted."""
    matrix: Dict[str, Dict[str, set]] = {}
    for endpoint, result in report.items():
        for op in result.get("dbOperations", []):
            kind = str(op.get("operation", "")).upper()
            letter = CRUD_LETTERS.get(kind)
            if letter is None:
                continue
            table = QUERY_ROW if kind == "QUERY" else (op.get("table") or "")
            if not table:
                continue
            matrix.setdefault(table, {}).setdefault(endpoint, set()).add(letter)

    out: Dict[str, Dict[str, str]] = {}
    for table in sorted(matrix):
        row = matrix[table]
        out[table] = {ep: "".join(c for c in CRUD_ORDER if c in letters) for ep, letters in row.items()}
    return out


def endpoint_rows(report: Dict[str, Any]) -> List[Dict[str, str]]:
    rows: List[Dict[str, str]] = []
    for endpoint, result in report.items():
        ops = result.get("dbOperations", [])
        if not ops:
            rows.append({
                "endpoint": endpoint,
                "service_method": result.get("serviceMethod", ""),
                "operation": "",
                "table": "",
                "query": "",
                "method_call": "",
            })
            continue
        for op in ops:
            rows.append({
                "endpoint": endpoint,
                "service_method": result.get("serviceMethod", ""),
                "operation": op.get("operation", ""),
                "table": op.get("table", ""),
                "query": op.get("query", ""),
                "method_call": op.get("methodCall", ""),
            })
    return rows


def matrix_rows(report: Dict[str, Any], matrix: Dict[str, Dict[str, str]]) -> List[Dict[str, str]]:
    endpoints = list(report.keys())
    rows = []
    for table, row in matrix.items():
        entry = {"table": table}
        for ep in endpoints:
            entry[ep] = row.get(ep, "")
        rows.append(entry)
    return rows


def print_crud_summary(report: Dict[str, Any], matrix: Dict[str, Dict[str, str]], file=None) -> None:
    file = file or sys.stderr
    total_ops = sum(len(r.get("dbOperations", [])) for r in report.values())
    print(f"[INFO] endpoints={len(report)} operations={total_ops} tables={len(matrix)}", file=file)
    for table, row in matrix.items():
        print(f"  {table}", file=file)
        for ep, letters in row.items():
            print(f"    {letters:<5} {ep}", file=file)
    silent = [ep for ep, r in report.items() if not r.get("dbOperations")]
    if silent:
        print(f"[INFO] endpoints without DB operations: {len(silent)}", file=file)
        for ep in silent:
            print(f"    {ep}", file=file)


# ---------- Excel ----------

def autosize_worksheet(ws) -> None:
    for col in ws.columns:
        max_len = 0
        col_letter = col[0].column_letter
        for cell in col:
            v = "" if cell.value is None else str(cell.value)
            if len(v) > max_len:
                max_len = len(v)
        ws.column_dimensions[col_letter].width = min(60, max(10, int(max_len * 0.9) + 2))


def write_sheet(wb, name: str, rows: List[Dict[str, str]]) -> None:
    ws = wb.create_sheet(title=name)
    if not rows:
        ws.append(["(no data)"])
        return
    headers = list(rows[0].keys())
    ws.append(headers)
    header_font = Font(bold=True)
    header_align = Alignment(wrap_text=True, vertical="top")
    for cell in ws[1]:
        cell.font = header_font
        cell.alignment = header_align
    for r in rows:
        ws.append([r.get(h, "") for h in headers])
    ws.freeze_panes = "A2"
    autosize_worksheet(ws)


def save_crud_workbook(out_path: Path, report: Dict[str, Any], matrix: Dict[str, Dict[str, str]]) -> None:
    wb = openpyxl.Workbook()
    # Remove default sheet
    if "Sheet" in wb.sheetnames:
        wb.remove(wb["Sheet"])
    write_sheet(wb, "Endpoints", endpoint_rows(report))
    write_sheet(wb, "CRUD_Matrix", matrix_rows(report, matrix))
    out_path = Path(out_path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    wb.save(out_path)


# ---------- Main ----------

def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="CRUD matrix from an API -> DB operation report")
    parser.add_argument("report", help="JSON report written by api-db-analyzer")
    parser.add_argument("--xlsx", default="", help="Write the matrix to this workbook")
    args = parser.parse_args(argv)

    report_path = Path(args.report)
    if not report_path.exists():
        raise SystemExit(f"[ERROR] report not found: {report_path}")
    try:
        report = json.loads(report_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise SystemExit(f"[ERROR] invalid report JSON: {e}")
    if not isinstance(report, dict):
        raise SystemExit(f"[ERROR] expected a JSON object in {report_path}")

    matrix = build_crud_matrix(report)
    print_crud_summary(report, matrix)
    if args.xlsx:
        save_crud_workbook(Path(args.xlsx), report, matrix)
        print(f"[INFO] workbook written: {args.xlsx}", file=sys.stderr)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
