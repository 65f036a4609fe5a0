"""
Near-duplicate detection: title similarity, duration and location gates.
"""
import pytest

from models import Activity
from services.deduplicator import DedupConfig, dedupe, is_duplicate, pick_representative
from services.text_similarity import (
    combined_similarity,
    keyword_overlap,
    levenshtein_distance,
    levenshtein_similarity,
    normalize_title,
    word_set_jaccard,
)


def _activity(name, location="Port de la Bourdonnais", duration=1.5, rating=4.5, reviews=100, price=40.0):
    return Activity.model_validate({
        "name": name,
        "location": location,
        "duration": duration,
        "rating": rating,
        "numberOfReviews": reviews,
        "price": {"amount": price, "currency": "EUR"},
    })


class TestTextSimilarity:

    def test_titles_drop_listing_noise(self):
        assert normalize_title("Skip-the-Line: Louvre Tickets!") == "louvre"
        assert normalize_title("Seine River Cruise Tickets") == "seine river cruise"

    def test_levenshtein(self):
        assert levenshtein_distance("kitten", "sitting") == 3
        assert levenshtein_distance("", "abc") == 3
        assert levenshtein_similarity("", "") == 1.0

    def test_jaccard_on_word_sets(self):
        assert word_set_jaccard("seine river cruise", "seine river dinner cruise") == 0.75
        assert word_set_jaccard("", "") == 0.0

    def test_keyword_overlap_ignores_non_keywords(self):
        assert keyword_overlap("seine dinner", "seine lunch") == 1.0
        assert keyword_overlap("dinner show", "lunch show") == 0.0

    def test_seine_cruise_listings_score_above_threshold(self):
        score = combined_similarity("Seine River Cruise Tickets", "Seine River Dinner Cruise")
        assert score == pytest.approx(0.816, abs=1e-3)

    def test_unrelated_titles_score_low(self):
        assert combined_similarity("Louvre Museum Guided Tour", "Montmartre Food Walk") < 0.3


class TestIsDuplicate:

    def test_same_title_after_normalization(self):
        a = _activity("Louvre Museum Tickets", duration=1)
        b = _activity("Louvre Museum", duration=4)
        assert is_duplicate(a, b, DedupConfig())

    def test_duration_gate(self):
        a = _activity("Seine River Cruise Tickets", duration=1)
        b = _activity("Seine River Dinner Cruise", duration=3)
        assert not is_duplicate(a, b, DedupConfig())

    def test_location_gate(self):
        a = _activity("Seine River Cruise Tickets", location="Port de la Bourdonnais")
        b = _activity("Seine River Dinner Cruise", location="Bercy Village")
        assert not is_duplicate(a, b, DedupConfig())

    def test_threshold_is_configurable(self):
        a = _activity("Seine River Cruise Tickets")
        b = _activity("Seine River Dinner Cruise")
        assert is_duplicate(a, b, DedupConfig(similarity_threshold=0.6))
        assert not is_duplicate(a, b, DedupConfig(similarity_threshold=0.85))


class TestDedupe:

    def test_seine_cruises_merge_into_the_higher_rated_one(self):
        tickets = _activity("Seine River Cruise Tickets", duration=1.0, rating=4.3)
        dinner = _activity("Seine River Dinner Cruise", duration=1.25, rating=4.8)
        louvre = _activity("Louvre Museum Guided Tour", location="Louvre", duration=3)

        result = dedupe([tickets, louvre, dinner], DedupConfig())

        assert [a.name for a in result] == ["Seine River Dinner Cruise", "Louvre Museum Guided Tour"]

    def test_dedupe_is_a_fixed_point(self):
        activities = [
            _activity("Seine River Cruise Tickets", rating=4.1),
            _activity("Seine River Dinner Cruise", rating=4.7),
            _activity("Seine Dinner Cruise with Live Music", rating=4.4),
            _activity("Louvre Museum Guided Tour", location="Louvre"),
            _activity("Louvre Museum Tickets", location="Louvre", rating=4.9),
        ]
        once = dedupe(activities, DedupConfig())
        assert dedupe(once, DedupConfig()) == once

    def test_implausible_durations_are_dropped(self):
        result = dedupe([
            _activity("Louvre Museum Guided Tour", location="Louvre", duration=30),
            _activity("Montmartre Walk", location="Montmartre", duration=0.1),
            _activity("Orsay Visit", location="Orsay", duration=0),
        ], DedupConfig())
        # zero means unknown and is kept
        assert [a.name for a in result] == ["Orsay Visit"]

    def test_representative_prefers_rated_then_reviews_then_cheaper(self):
        unrated = _activity("A", rating=0, reviews=5000)
        rated = _activity("B", rating=4.0, reviews=10)
        assert pick_representative([unrated, rated]) is rated

        cheap = _activity("C", rating=4.0, reviews=10, price=20)
        assert pick_representative([rated, cheap]) is cheap

        assert pick_representative([rated, _activity("D", rating=4.0, reviews=10, price=40)]) is rated
