import pytest

from components.result_validator import (
    ResultValidator, find_unresolved, has_doubled_scheme, is_base_domain_url, required_fields_for,
    title_overlap, titles_of
)


def good(i, host="bookshelf.com"):
    return {
        'TITLE': f"Book {i}",
        'URL': f"https://{host}/book/{i}",
        'COVER': f"https://{host}/covers/{i}.jpg",
        'SUBTITLE': "1965",
    }


class TestListValidation:
    """Tests for autocomplete result validation."""

    def setup_method(self):
        self.validator = ResultValidator(min_valid=3, min_fraction=0.3)

    def test_all_valid(self):
        outcome = self.validator.validate_list([good(i) for i in range(10)], "bookshelf.com")

        assert outcome.accepted
        assert len(outcome.valid) == 10
        assert outcome.issues == ()
        assert outcome.total == 10

    def test_no_results(self):
        outcome = self.validator.validate_list([], "bookshelf.com")

        assert not outcome.accepted
        assert outcome.messages == ["No results returned from engine"]

    def test_doubled_domain_is_rejected(self):
        """Test that a URL built from two concatenated loop values is caught."""
        results = [good(i) for i in range(2)]
        results.append(dict(good(2), URL="https://bookshelf.com/book/1https://bookshelf.com/book/10"))
        outcome = self.validator.validate_list(results, "bookshelf.com")

        assert not outcome.accepted
        assert len(outcome.valid) == 2
        assert outcome.issues[0].result_index == 3
        assert outcome.issues[0].kind == "doubled_domain_url"
        assert "doubled domain" in outcome.messages[0]

    def test_base_domain_url_is_rejected(self):
        results = [dict(good(i), URL="https://bookshelf.com/") for i in range(3)]
        outcome = self.validator.validate_list(results, "bookshelf.com")

        assert not outcome.accepted
        assert outcome.messages[0] == 'Result 1: URL is just base domain: "https://bookshelf.com/" (should be a detail page)'

    def test_unresolved_variable(self):
        results = [dict(good(i), TITLE="$TEAM$i - $SEASON$i") for i in range(3)]
        outcome = self.validator.validate_list(results)

        assert not outcome.accepted
        assert 'TITLE contains unreplaced variable: "$TEAM$i - $SEASON$i"' in outcome.messages[0]

    def test_unresolved_variable_in_optional_field(self):
        results = [good(0), dict(good(1), SUBTITLE="$YEAR$i"), good(2)]
        outcome = self.validator.validate_list(results)

        assert len(outcome.valid) == 2
        assert outcome.issues[0].result_index == 2

    def test_empty_required_field(self):
        outcome = self.validator.validate_list([dict(good(0), COVER="  ")])

        assert outcome.messages == ["Result 1: COVER is empty"]

    def test_empty_subtitle_is_only_a_warning(self):
        results = [dict(good(i), SUBTITLE="") for i in range(3)]
        outcome = self.validator.validate_list(results)

        assert outcome.accepted
        assert outcome.warnings[0] == "Result 1: SUBTITLE is empty (optional)"

    @pytest.mark.parametrize("total,valid,accepted", [
        (10, 3, True),
        (10, 2, False),
        (20, 6, True),
        (20, 5, False),
        (3, 3, True),
    ])
    def test_threshold(self, total, valid, accepted):
        """Test that max(3, floor(0.3 * total)) results must pass."""
        results = [good(i) for i in range(valid)] + [dict(good(i), TITLE="") for i in range(valid, total)]
        assert self.validator.validate_list(results).accepted is accepted


class TestDetailValidation:
    """Tests for single-record validation."""

    def setup_method(self):
        self.validator = ResultValidator()

    def test_complete_record(self):
        record = {'TITLE': 'Dune', 'DESCRIPTION': 'Desert planet', 'FAVICON': '/f.ico', 'COVER': '/c.jpg'}
        outcome = self.validator.validate_detail(record, required_fields_for('generic'))

        assert outcome.accepted
        assert outcome.valid == (record,)

    def test_missing_expected_field(self):
        outcome = self.validator.validate_detail({'TITLE': 'Dune'}, ['TITLE', 'RATING'])

        assert not outcome.accepted
        assert outcome.messages == ["RATING is empty"]

    def test_empty_record(self):
        outcome = self.validator.validate_detail({})
        assert outcome.messages == ["No fields returned from engine"]


class TestCrossQueryChecks:
    """Tests for static content detection."""

    def setup_method(self):
        self.validator = ResultValidator(static_overlap=0.7)

    def test_identical_sets_are_static(self):
        first = [good(i) for i in range(10)]
        assert self.validator.is_static_content(first, [dict(r) for r in first])

    def test_seventy_percent_overlap_is_static(self):
        first = [good(i) for i in range(10)]
        second = [good(i) for i in range(7)] + [dict(good(i), TITLE=f"Other {i}") for i in range(3)]
        assert self.validator.is_static_content(first, second)

    def test_below_threshold_is_not_static(self):
        first = [good(i) for i in range(10)]
        second = [good(i) for i in range(6)] + [dict(good(i), TITLE=f"Other {i}") for i in range(4)]
        assert not self.validator.is_static_content(first, second)

    def test_multi_query_identical(self):
        results = [good(i) for i in range(5)]
        check = self.validator.validate_multi_query({'dune': results, 'alien': results})

        assert not check.valid
        assert check.reason == "All queries returned identical results - recipe may not be searching"

    def test_semantic_match(self):
        results = [{'TITLE': 'Dune'}, {'TITLE': 'Dune Messiah'}, {'TITLE': 'Hyperion'}]
        match = self.validator.semantic_match(results, 'dune', min_ratio=0.5)

        assert match.valid
        assert match.match_count == 2
        assert match.unmatched_titles == ['Hyperion']


def test_is_base_domain_url():
    assert is_base_domain_url("https://bookshelf.com")
    assert is_base_domain_url("https://bookshelf.com/")
    assert not is_base_domain_url("https://bookshelf.com/?q=dune")
    assert not is_base_domain_url("https://bookshelf.com/book/1")
    assert is_base_domain_url("/", "bookshelf.com")
    assert not is_base_domain_url("/book/1", "bookshelf.com")


def test_helpers():
    assert has_doubled_scheme("https://a.com/1https://a.com/2")
    assert not has_doubled_scheme("https://a.com/?next=/b")
    assert find_unresolved("$URL$i")
    assert not find_unresolved("Price: $20")
    assert titles_of([{'name': 'A'}, {'title': 'B'}], ('title', 'name')) == {'A', 'B'}
    assert title_overlap({'A', 'B'}, {'B'}) == 0.5
    assert title_overlap(set(), {'B'}) == 0.0
    assert required_fields_for('unknown_type') == required_fields_for('generic')
