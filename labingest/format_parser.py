from __future__ import annotations

import csv
import datetime as dt
import io
import logging
import math
import re
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable

import numpy as np
import openpyxl
import xarray as xr

from labingest.content_validator import canonical_extension
from labingest.errors import ParseError
from labingest.peaks import detect_peaks

logger = logging.getLogger(__name__)

CSV_DELIMITERS = ",;\t|"
JCAMP_DATA_LABELS = {"XYDATA", "XYPOINTS", "PEAK TABLE", "PEAKTABLE"}
CDF_INSTRUMENT_ATTRIBUTES = (
    "experiment_title",
    "operator_name",
    "injection_date_time_stamp",
    "detector_name",
    "detector_unit",
    "detection_method_name",
    "sample_name",
    "sample_id",
    "retention_unit",
    "dataset_origin",
)

_INT_PATTERN = re.compile(r"[+-]?\d+")
_FLOAT_PATTERN = re.compile(r"[+-]?(?:\d+\.\d*|\.\d+|\d+)(?:[eE][+-]?\d+)?")


@dataclass
class ParsedData:
    rows: list[dict[str, Any]]
    metadata: dict[str, Any]
    headers: list[str] | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        if self.headers is None:
            payload.pop("headers")
        return payload


@dataclass(frozen=True)
class _Table:
    headers: list[str]
    rows: list[list[Any]]
    extra: dict[str, Any] = field(default_factory=dict)


def coerce_cell(value: str) -> int | float | str | None:
    """Turn a lexically numeric cell into a number; keep anything else as text."""

    cleaned = value.strip()
    if not cleaned:
        return None
    if _INT_PATTERN.fullmatch(cleaned):
        return int(cleaned)
    if _FLOAT_PATTERN.fullmatch(cleaned):
        number = float(cleaned)
        # overflowing literals such as 1e999 stay text
        if math.isfinite(number):
            return number
    return cleaned


def _normalize_headers(raw_headers: list[Any]) -> list[str]:
    headers: list[str] = []
    for index, raw in enumerate(raw_headers):
        name = str(raw).strip().strip("'\"").strip() if raw is not None else ""
        name = name or f"column_{index + 1}"
        candidate = name
        suffix = 2
        while candidate in headers:
            candidate = f"{name}_{suffix}"
            suffix += 1
        headers.append(candidate)
    return headers


def _infer_column_type(values: list[Any]) -> str:
    non_null = [value for value in values if value is not None]
    if not non_null:
        return "null"
    if all(isinstance(value, bool) for value in non_null):
        return "boolean"
    if all(isinstance(value, int) and not isinstance(value, bool) for value in non_null):
        return "integer"
    if all(isinstance(value, (int, float)) and not isinstance(value, bool) for value in non_null):
        return "float"
    return "string"


def infer_table_schema(headers: list[str], rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
    row_count = len(rows)
    columns: list[dict[str, Any]] = []
    for name in headers:
        values = [row.get(name) for row in rows]
        null_count = sum(1 for value in values if value is None)
        columns.append(
            {
                "name": name,
                "inferred_type": _infer_column_type(values),
                "null_ratio": round(null_count / row_count, 4) if row_count else 0.0,
            }
        )
    return columns


def _rows_to_records(headers: list[str], rows: list[list[Any]]) -> list[dict[str, Any]]:
    records = []
    for row in rows:
        records.append({name: row[index] if index < len(row) else None for index, name in enumerate(headers)})
    return records


def _decode_utf8(content: bytes, format_name: str) -> str:
    try:
        return content.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise ParseError(format_name, f"unreadable encoding (expected UTF-8, invalid byte at offset {exc.start})") from exc


def _pick_delimiter(header_line: str, sample: str) -> str:
    if "," in header_line:
        return ","
    try:
        return csv.Sniffer().sniff(sample, delimiters=CSV_DELIMITERS).delimiter
    except csv.Error:
        return ","


def _read_csv_table(content: bytes) -> _Table:
    text = _decode_utf8(content, "CSV")
    lines = [line for line in text.splitlines() if line.strip()]
    if not lines:
        raise ParseError("CSV", "empty data: the file contains no lines")

    delimiter = _pick_delimiter(lines[0], "\n".join(lines[:50]))
    try:
        records = list(csv.reader(lines, delimiter=delimiter))
    except csv.Error as exc:
        raise ParseError("CSV", f"malformed row ({exc})") from exc

    headers = _normalize_headers(records[0])
    rows = [[coerce_cell(cell) for cell in record] for record in records[1:]]
    if not rows:
        raise ParseError("CSV", "empty data: no data rows after the header line")
    ragged = sum(1 for record in records[1:] if len(record) != len(headers))
    return _Table(headers=headers, rows=rows, extra={"delimiter": delimiter, "ragged_rows": ragged})


def _coerce_spreadsheet_value(value: Any) -> Any:
    if value is None or isinstance(value, (bool, int)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if isinstance(value, (dt.datetime, dt.date, dt.time)):
        return value.isoformat()
    if isinstance(value, dt.timedelta):
        return value.total_seconds()
    return coerce_cell(str(value))


def _read_spreadsheet_table(content: bytes) -> _Table:
    try:
        workbook = openpyxl.load_workbook(io.BytesIO(content), read_only=True, data_only=True)
    except Exception as exc:  # noqa: BLE001
        raise ParseError("XLSX", "unreadable workbook") from exc

    try:
        if not workbook.worksheets:
            raise ParseError("XLSX", "workbook contains no worksheets")
        sheet = workbook.worksheets[0]
        values = [
            list(row)
            for row in sheet.iter_rows(values_only=True)
            if any(cell is not None and str(cell).strip() for cell in row)
        ]
        sheet_name = sheet.title
        sheet_count = len(workbook.worksheets)
    finally:
        workbook.close()

    if not values:
        raise ParseError("XLSX", "empty data: the first worksheet is empty")

    headers = _normalize_headers(values[0])
    rows = [[_coerce_spreadsheet_value(cell) for cell in row] for row in values[1:]]
    if not rows:
        raise ParseError("XLSX", "empty data: no data rows after the header row")
    return _Table(headers=headers, rows=rows, extra={"sheet_name": sheet_name, "sheet_count": sheet_count})


def _table_result(table: _Table, format_name: str) -> ParsedData:
    records = _rows_to_records(table.headers, table.rows)
    metadata = {
        "format": format_name,
        "row_count": len(records),
        "column_count": len(table.headers),
        "columns": infer_table_schema(table.headers, records),
        **table.extra,
    }
    return ParsedData(headers=table.headers, rows=records, metadata=metadata)


def parse_csv(content: bytes) -> ParsedData:
    return _table_result(_read_csv_table(content), "CSV")


def parse_spreadsheet(content: bytes) -> ParsedData:
    return _table_result(_read_spreadsheet_table(content), "XLSX")


def _plain(value: Any) -> Any:
    if isinstance(value, np.generic):
        return value.item()
    if isinstance(value, np.ndarray):
        return value.tolist()
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


def _numeric_variable(dataset: xr.Dataset, name: str) -> np.ndarray:
    try:
        values = np.asarray(dataset[name].values, dtype=float).ravel()
    except (TypeError, ValueError) as exc:
        raise ParseError("CDF", f"variable '{name}' is not numeric") from exc
    if not np.all(np.isfinite(values)):
        raise ParseError("CDF", f"variable '{name}' contains missing or non-finite values")
    return values


def _scalar_variable(dataset: xr.Dataset, name: str, default: float) -> float:
    if name not in dataset.variables:
        return default
    values = _numeric_variable(dataset, name)
    return float(values[0]) if values.size else default


def _reported_peaks(dataset: xr.Dataset) -> list[dict[str, float]]:
    if "peak_retention_time" not in dataset.variables:
        return []
    columns = {"retention_time": _numeric_variable(dataset, "peak_retention_time")}
    for key, name in (("area", "peak_area"), ("height", "peak_height")):
        if name in dataset.variables:
            values = _numeric_variable(dataset, name)
            if values.size == columns["retention_time"].size:
                columns[key] = values
    return [
        {key: float(values[index]) for key, values in columns.items()}
        for index in range(columns["retention_time"].size)
    ]


def parse_chromatography(content: bytes) -> ParsedData:
    """Decode an ANDI/AIA chromatography netCDF file into a time series with peaks."""

    try:
        dataset = xr.open_dataset(io.BytesIO(content), engine="scipy", decode_times=False)
    except Exception as exc:  # noqa: BLE001
        raise ParseError("CDF", "unreadable netCDF container") from exc

    with dataset:
        if "ordinate_values" not in dataset.variables:
            raise ParseError("CDF", "required variable 'ordinate_values' is missing")
        intensity = _numeric_variable(dataset, "ordinate_values")
        if intensity.size == 0:
            raise ParseError("CDF", "empty data: 'ordinate_values' holds no points")

        if "raw_data_retention" in dataset.variables:
            time_points = _numeric_variable(dataset, "raw_data_retention")
            if time_points.size != intensity.size:
                raise ParseError("CDF", "'raw_data_retention' and 'ordinate_values' differ in length")
        else:
            delay = _scalar_variable(dataset, "actual_delay_time", 0.0)
            interval = _scalar_variable(dataset, "actual_sampling_interval", 1.0)
            if interval <= 0:
                raise ParseError("CDF", "'actual_sampling_interval' must be positive")
            time_points = delay + interval * np.arange(intensity.size, dtype=float)

        instrument = {
            key: _plain(dataset.attrs[key])
            for key in CDF_INSTRUMENT_ATTRIBUTES
            if key in dataset.attrs
        }
        reported_peaks = _reported_peaks(dataset)

    peaks = [
        {"retention_time": peak.x, "height": peak.height, "area": peak.area, "index": peak.index}
        for peak in detect_peaks(time_points, intensity)
    ]
    record = {
        "time_points": time_points.tolist(),
        "intensity": intensity.tolist(),
        "peaks": peaks,
        "instrument": instrument,
        "reported_peaks": reported_peaks,
    }
    metadata = {
        "format": "CDF (Chromatography)",
        "row_count": 1,
        "column_count": len(record),
        "point_count": int(intensity.size),
        "peak_count": len(peaks),
    }
    return ParsedData(rows=[record], metadata=metadata)


def _jcamp_numbers(line: str, line_number: int) -> list[float]:
    tokens = [token for token in re.split(r"[\s,;]+", line) if token]
    numbers: list[float] = []
    for token in tokens:
        if not _FLOAT_PATTERN.fullmatch(token):
            raise ParseError(
                "JCAMP-DX",
                f"non-numeric value in data block at line {line_number} "
                "(compressed ASDF encodings are not supported)",
            )
        number = float(token)
        if not math.isfinite(number):
            raise ParseError("JCAMP-DX", f"value out of range in data block at line {line_number}")
        numbers.append(number)
    return numbers


def _header_float(headers: dict[str, str], key: str) -> float | None:
    value = headers.get(key)
    if value is None:
        return None
    try:
        number = float(value.strip())
    except ValueError as exc:
        raise ParseError("JCAMP-DX", f"header ##{key} is not numeric") from exc
    if not math.isfinite(number):
        raise ParseError("JCAMP-DX", f"header ##{key} is not numeric")
    return number


def _expand_xpp(lines: list[list[float]], headers: dict[str, str], xfactor: float, yfactor: float) -> tuple[list[float], list[float]]:
    y_values = [value * yfactor for line in lines for value in line[1:]]
    if not y_values:
        return [], []

    firstx = _header_float(headers, "FIRSTX")
    if firstx is None:
        firstx = lines[0][0] * xfactor
    deltax = _header_float(headers, "DELTAX")
    if deltax is None:
        lastx = _header_float(headers, "LASTX")
        npoints = _header_float(headers, "NPOINTS")
        count = int(npoints) if npoints else len(y_values)
        if lastx is not None and count > 1:
            deltax = (lastx - firstx) / (count - 1)
        elif len(lines) > 1 and len(lines[0]) > 1:
            deltax = (lines[1][0] - lines[0][0]) * xfactor / (len(lines[0]) - 1)
        else:
            deltax = 1.0
    x_values = [firstx + deltax * index for index in range(len(y_values))]
    return x_values, y_values


def _pairs(lines: list[list[float]], xfactor: float, yfactor: float, line_numbers: list[int]) -> tuple[list[float], list[float]]:
    x_values: list[float] = []
    y_values: list[float] = []
    for numbers, line_number in zip(lines, line_numbers):
        if len(numbers) % 2:
            raise ParseError("JCAMP-DX", f"incomplete X/Y pair at line {line_number}")
        for offset in range(0, len(numbers), 2):
            x_values.append(numbers[offset] * xfactor)
            y_values.append(numbers[offset + 1] * yfactor)
    return x_values, y_values


def parse_spectroscopy(content: bytes) -> ParsedData:
    """Decode a JCAMP-DX spectrum: labelled header first, then the X/Y data block."""

    text = _decode_utf8(content, "JCAMP-DX")
    labels: dict[str, str] = {}
    headers: dict[str, str] = {}
    descriptor: str | None = None
    data_lines: list[list[float]] = []
    data_line_numbers: list[int] = []
    in_data = False

    for line_number, raw_line in enumerate(text.splitlines(), start=1):
        line = raw_line.split("$$", 1)[0].strip()
        if not line:
            continue
        if line.startswith("##"):
            label, _, value = line[2:].partition("=")
            key = label.strip().upper()
            if key == "END":
                if descriptor is not None:
                    break
                continue
            if key in JCAMP_DATA_LABELS:
                if descriptor is not None:
                    break
                descriptor = value.strip()
                in_data = True
                continue
            in_data = False
            if descriptor is None:
                labels[label.strip()] = value.strip()
                headers[key] = value.strip()
            continue
        if in_data:
            data_lines.append(_jcamp_numbers(line, line_number))
            data_line_numbers.append(line_number)

    if descriptor is None:
        raise ParseError("JCAMP-DX", "no ##XYDATA data block marker found")

    xfactor = _header_float(headers, "XFACTOR") or 1.0
    yfactor = _header_float(headers, "YFACTOR") or 1.0
    if "X++" in descriptor.upper().replace(" ", ""):
        x_values, y_values = _expand_xpp(data_lines, headers, xfactor, yfactor)
    else:
        x_values, y_values = _pairs(data_lines, xfactor, yfactor, data_line_numbers)

    if not x_values:
        raise ParseError("JCAMP-DX", "empty data: the data block holds no points")

    peaks = [
        {"x": peak.x, "y": peak.height, "intensity": peak.height, "area": peak.area, "index": peak.index}
        for peak in detect_peaks(x_values, y_values)
    ]
    record = {
        "spectrum": [{"x": x, "y": y} for x, y in zip(x_values, y_values)],
        "metadata": labels,
        "peaks": peaks,
    }
    metadata = {
        "format": "JCAMP-DX (Spectroscopy)",
        "row_count": 1,
        "column_count": 2,
        "point_count": len(x_values),
        "peak_count": len(peaks),
        "data_descriptor": descriptor,
    }
    return ParsedData(rows=[record], metadata=metadata)


PARSERS: dict[str, Callable[[bytes], ParsedData]] = {
    ".csv": parse_csv,
    ".xlsx": parse_spreadsheet,
    ".cdf": parse_chromatography,
    ".jdx": parse_spectroscopy,
}


def parse_content(content: bytes, filename: str, size: int, detected_type: str) -> ParsedData:
    """Dispatch on the sniffed type; the filename is only carried into metadata."""

    parser = PARSERS.get(canonical_extension(detected_type or ""))
    if parser is None:
        raise ParseError(detected_type or "unknown", "unsupported file format")

    started = time.perf_counter()
    result = parser(content)
    result.metadata["file_name"] = filename
    result.metadata["file_size"] = size
    result.metadata["parse_time_ms"] = round((time.perf_counter() - started) * 1000, 3)
    logger.debug(
        "Parsed %s: %d rows in %.1f ms",
        result.metadata["format"],
        result.metadata["row_count"],
        result.metadata["parse_time_ms"],
    )
    return result
