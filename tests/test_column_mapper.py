"""Tests for mapping inference and validation."""

import pytest

from app.schemas.imports import ColumnMapping
from app.services.column_mapper import infer_mapping, validate_mapping
from app.services.import_errors import MappingError, MappingErrorKind


# ─── Inference ────────────────────────────────────────────────

class TestInferMapping:
    def test_exact_headers(self):
        mapping = infer_mapping(["name", "email", "phone"])
        assert mapping == ColumnMapping(name="name", email="email", phone="phone")

    def test_case_and_punctuation(self):
        mapping = infer_mapping(["Student Name", "E-mail", "Mobile Number"])
        assert mapping.name == "Student Name"
        assert mapping.email == "E-mail"
        assert mapping.phone == "Mobile Number"

    def test_synonyms(self):
        mapping = infer_mapping(["Full Name", "Mail", "Contact"])
        assert mapping == ColumnMapping(name="Full Name", email="Mail", phone="Contact")

    def test_email_address_is_not_a_name(self):
        # 'name' must not win 'Email Address'; only one header per field
        mapping = infer_mapping(["Email Address", "Student"])
        assert mapping.email == "Email Address"
        assert mapping.name == "Student"

    def test_short_synonym_needs_whole_word(self):
        mapping = infer_mapping(["Name", "Hotel"])
        assert mapping.phone is None

        mapping = infer_mapping(["Name", "Tel"])
        assert mapping.phone == "Tel"

    def test_exact_beats_substring(self):
        mapping = infer_mapping(["Guardian Phone", "Phone"])
        assert mapping.phone == "Phone"

    def test_ties_go_to_earlier_column(self):
        mapping = infer_mapping(["Phone", "Phone (2)"])
        assert mapping.phone == "Phone"

    def test_each_header_used_once(self):
        mapping = infer_mapping(["Contact Email"])
        assert mapping.email == "Contact Email"
        assert mapping.phone is None

    def test_unrecognized_headers(self):
        assert infer_mapping(["Roll", "Batch", "Column 3"]) == ColumnMapping()

    def test_never_fails_on_blank(self):
        assert infer_mapping(["", "  "]) == ColumnMapping()


# ─── Validation ───────────────────────────────────────────────

class TestValidateMapping:
    HEADERS = ("Student Name", "E-mail", "Mobile Number")

    def test_valid(self):
        validate_mapping(self.HEADERS, ColumnMapping(name="Student Name", email="E-mail"))

    def test_name_required(self):
        with pytest.raises(MappingError) as exc:
            validate_mapping(self.HEADERS, ColumnMapping(email="E-mail"))
        assert exc.value.kind == MappingErrorKind.MISSING_REQUIRED_FIELD

    def test_unknown_column(self):
        with pytest.raises(MappingError) as exc:
            validate_mapping(self.HEADERS, ColumnMapping(name="Student Name", phone="Phone"))
        assert exc.value.kind == MappingErrorKind.UNKNOWN_COLUMN
        assert "Phone" in exc.value.message

    def test_unknown_name_column(self):
        with pytest.raises(MappingError) as exc:
            validate_mapping(self.HEADERS, ColumnMapping(name="name"))
        assert exc.value.kind == MappingErrorKind.UNKNOWN_COLUMN
