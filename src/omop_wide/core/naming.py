"""
Naming conventions of the OMOP CDM.

Everything the traversal engine knows about the schema is inferred from
column names: `<table>_id` identifiers, `<table>_concept_id` event
categories and `*_date` time stamps. The helpers here are pure functions
over names and never touch the database.
"""

import re
from collections.abc import Iterable

ID_SUFFIX = "_id"
CONCEPT_ID_SUFFIX = "_concept_id"
TOKEN_SEPARATOR = "."

_NON_ALPHANUMERIC = re.compile(r"[^0-9a-z]+")
_TABLE_QUALIFIERS = ("_occurrence", "_exposure")


def standardize_name(name: str) -> str:
    """
    Normalize a free-text label so it is safe as a column-name fragment.

    Lowercases, replaces every run of non-alphanumeric characters with a
    single underscore and trims leading/trailing underscores.

    Examples:
        >>> standardize_name("Blood Pressure")
        'blood_pressure'
        >>> standardize_name("HDL-C (mg/dL)")
        'hdl_c_mg_dl'
        >>> standardize_name("__extra__spaces__")
        'extra_spaces'
    """
    return _NON_ALPHANUMERIC.sub("_", str(name).lower()).strip("_")


def find_case_insensitive(names: Iterable[str], target: str) -> str | None:
    """
    Resolve `target` against `names`: exact match first, then case-insensitive.

    Returns the matching name as spelled in `names`, or None.
    """
    names = list(names)
    if target in names:
        return target

    lowered = target.lower()
    for name in names:
        if name.lower() == lowered:
            return name
    return None


def table_id_column(table_name: str) -> str:
    """Primary identifier column of a table (`measurement` -> `measurement_id`)."""
    return f"{table_name.lower()}{ID_SUFFIX}"


def id_category_table(category: str) -> str:
    """Table referenced by an identifier category (`person_id` -> `person`)."""
    return category[: -len(ID_SUFFIX)] if category.endswith(ID_SUFFIX) else category


def concept_id_column_candidates(table_name: str) -> list[str]:
    """
    Candidate names for a table's event concept column, most specific first.

    `condition_occurrence` -> condition_occurrence_concept_id, condition_concept_id
    `drug_exposure` -> drug_exposure_concept_id, drug_concept_id
    """
    base = table_name.lower()
    candidates = [f"{base}{CONCEPT_ID_SUFFIX}"]

    stripped = base
    for qualifier in _TABLE_QUALIFIERS:
        stripped = stripped.replace(qualifier, "")
    candidates.append(f"{stripped}{CONCEPT_ID_SUFFIX}")
    candidates.append(f"{base.split('_')[0]}{CONCEPT_ID_SUFFIX}")

    return list(dict.fromkeys(candidates))


def resolve_concept_id_column(table_name: str, columns: Iterable[str]) -> str | None:
    """Return the table's concept column as spelled in `columns`, or None if it has none."""
    columns = list(columns)
    for candidate in concept_id_column_candidates(table_name):
        match = find_case_insensitive(columns, candidate)
        if match is not None:
            return match
    return None


def is_concept_id_column(column: str) -> bool:
    return column.lower().endswith(CONCEPT_ID_SUFFIX)


def is_id_column(column: str) -> bool:
    """Identifier columns, excluding concept identifiers."""
    lowered = column.lower()
    return lowered.endswith(ID_SUFFIX) and not lowered.endswith(CONCEPT_ID_SUFFIX)


def find_date_column(columns: Iterable[str]) -> str | None:
    """
    Pick the column that time-stamps a longitudinal row.

    Prefers a column ending in `_date` (e.g. measurement_date), falling back to
    the first column mentioning "date" at all (e.g. measurement_datetime).
    """
    columns = list(columns)
    for column in columns:
        if column.lower().endswith("_date"):
            return column
    for column in columns:
        if "date" in column.lower():
            return column
    return None


def split_tokens(column: str) -> list[str]:
    return column.split(TOKEN_SEPARATOR)


def join_tokens(tokens: Iterable[str]) -> str:
    return TOKEN_SEPARATOR.join(tokens)


def is_dotted(column: str) -> bool:
    return TOKEN_SEPARATOR in column


def code_text(value) -> str:
    """
    Text form of a coded value, comparable across numeric and text columns.

    Integral floats lose their fractional part so `3004501.0` matches `3004501`.
    """
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    text = str(value).strip()
    if text.endswith(".0") and text[:-2].lstrip("-").isdigit():
        return text[:-2]
    return text


def code_text_forms(value) -> list[str]:
    """
    Texts a store may render for a coded value when its column is cast to text.

    Float columns render integral codes as `3004501.0` on some stores, so
    integral codes carry both forms.
    """
    text = code_text(value)
    if text.lstrip("-").isdigit():
        return [text, f"{text}.0"]
    return [text]
