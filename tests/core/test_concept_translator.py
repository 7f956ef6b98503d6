"""
Tests for ConceptTranslator.

Test name follows: test_unit_scenario_expectedBehavior
"""

import polars as pl
import pytest
from structlog.testing import capture_logs

from omop_wide.core.concept_translator import ConceptTranslator
from omop_wide.core.errors import TranslationUnavailableError
from omop_wide.storage.connection import DuckDBConnection

GLUCOSE = 3004501
HBA1C = 3004410


@pytest.fixture
def translator(omop_connection):
    return ConceptTranslator(omop_connection)


class TestLookup:
    """Test suite for vocabulary lookups."""

    def test_lookup_returns_names_keyed_by_code_text(self, translator):
        names = translator.lookup([GLUCOSE, float(HBA1C), 999])
        assert names == {"3004501": "Glucose", "3004410": "Hemoglobin A1c"}

    def test_lookup_no_codes_skips_query(self, translator):
        assert translator.lookup([None]) == {}

    def test_lookup_absent_vocabulary_raises(self, make_omop_database):
        # Arrange
        translator = ConceptTranslator(DuckDBConnection(db_connection=make_omop_database(include_vocabulary=False)))

        # Act & Assert
        with pytest.raises(TranslationUnavailableError, match="does not exist"):
            translator.lookup([GLUCOSE])

    def test_lookup_vocabulary_resolved_case_insensitively(self, make_omop_database):
        # Arrange: upper-case vocabulary table and columns, text-typed ids
        conn = make_omop_database(
            tables={"CONCEPT": pl.DataFrame({"CONCEPT_ID": ["3004501"], "CONCEPT_NAME": ["Glucose"]})}
        )
        translator = ConceptTranslator(DuckDBConnection(db_connection=conn))

        # Act
        names = translator.lookup([GLUCOSE])

        # Assert
        assert names == {"3004501": "Glucose"}

    def test_lookup_float_typed_vocabulary(self, float_id_connection):
        # Act: DOUBLE concept ids render as "3004501.0" when cast to text
        names = ConceptTranslator(float_id_connection).lookup([GLUCOSE, str(HBA1C)])

        # Assert
        assert names == {"3004501": "Glucose", "3004410": "Hemoglobin A1c"}

    def test_available_reflects_vocabulary_presence(self, translator, make_omop_database):
        absent = ConceptTranslator(DuckDBConnection(db_connection=make_omop_database(include_vocabulary=False)))
        assert translator.available is True
        assert absent.available is False


class TestTranslate:
    """Test suite for ConceptTranslator.translate."""

    def test_translate_mapped_unmapped_and_missing_values(self, translator):
        # Arrange
        df = pl.DataFrame({"measurement_concept_id": [GLUCOSE, 999, None, HBA1C]})

        # Act
        result = translator.translate(df)

        # Assert
        assert result["measurement_concept_id"].to_list() == ["glucose", "concept_id_999", None, "hemoglobin_a1c"]
        assert translator.warnings == []

    def test_translate_is_deterministic(self, translator):
        df = pl.DataFrame({"measurement_concept_id": [999, GLUCOSE]})
        assert translator.translate(df).equals(translator.translate(df))

    def test_translate_mixed_numeric_and_text_codes(self, translator):
        # Arrange: text codes, one with a float rendering
        df = pl.DataFrame({"measurement_concept_id": ["3004501", "3004410.0", ""]})

        # Act
        result = translator.translate(df)

        # Assert
        assert result["measurement_concept_id"].to_list() == ["glucose", "hemoglobin_a1c", None]

    def test_translate_float_codes(self, translator):
        df = pl.DataFrame({"unit_concept_id": [8753.0, None]})
        assert translator.translate(df)["unit_concept_id"].to_list() == ["millimole_per_liter", None]

    def test_translate_float_typed_vocabulary_and_data(self, float_id_connection):
        # Arrange
        df = pl.DataFrame({"measurement_concept_id": [float(GLUCOSE), float(HBA1C)]})

        # Act
        result = ConceptTranslator(float_id_connection).translate(df)

        # Assert
        assert result["measurement_concept_id"].to_list() == ["glucose", "hemoglobin_a1c"]

    def test_translate_non_integral_float_code_keeps_fraction(self, translator):
        df = pl.DataFrame({"unit_concept_id": [1.5]})
        assert translator.translate(df)["unit_concept_id"].to_list() == ["concept_id_1.5"]

    def test_translate_only_requested_columns(self, translator):
        # Arrange
        df = pl.DataFrame({"measurement_concept_id": [GLUCOSE], "unit_concept_id": [8753]})

        # Act
        result = translator.translate(df, ["measurement_concept_id"])

        # Assert
        assert result["measurement_concept_id"].to_list() == ["glucose"]
        assert result["unit_concept_id"].to_list() == [8753]

    def test_translate_without_concept_columns_unchanged(self, translator):
        df = pl.DataFrame({"person_id": ["1"]})
        assert translator.translate(df).equals(df)

    def test_translate_absent_vocabulary_passes_values_through_with_warning(self, make_omop_database):
        # Arrange
        connection = DuckDBConnection(db_connection=make_omop_database(include_vocabulary=False))
        translator = ConceptTranslator(connection)
        df = pl.DataFrame({"measurement_concept_id": [GLUCOSE, 999]})

        # Act
        with capture_logs() as logs:
            result = translator.translate(df)

        # Assert
        assert result.equals(df)
        assert len(translator.warnings) == 1
        assert any(log["event"] == "translation_unavailable" and log["log_level"] == "warning" for log in logs)

    def test_translate_vocabulary_without_name_column_passes_values_through(self, make_omop_database):
        # Arrange: vocabulary table without a concept_name column
        conn = make_omop_database(tables={"concept": pl.DataFrame({"concept_id": [GLUCOSE]})})
        translator = ConceptTranslator(DuckDBConnection(db_connection=conn))
        df = pl.DataFrame({"measurement_concept_id": [GLUCOSE]})

        # Act
        result = translator.translate(df)

        # Assert
        assert result.equals(df)
        assert translator.warnings


class TestVocabularySchema:
    """Test suite for lookups in a separate vocabulary schema."""

    def test_lookup_switches_to_vocabulary_schema_and_restores(self, make_omop_database):
        # Arrange: vocabulary in schema "vocab", data in "main"
        conn = make_omop_database(include_vocabulary=False)
        conn.execute("CREATE SCHEMA vocab")
        conn.execute("CREATE TABLE vocab.concept AS SELECT 3004501 AS concept_id, 'Glucose' AS concept_name")
        connection = DuckDBConnection(db_connection=conn)
        translator = ConceptTranslator(connection, vocabulary_schema="vocab")

        # Act
        names = translator.lookup([GLUCOSE])

        # Assert
        assert names == {"3004501": "Glucose"}
        assert connection.current_schema() == "main"
