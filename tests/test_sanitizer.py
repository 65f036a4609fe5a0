"""
Repair of near-JSON LLM output.
"""
import json

import pytest

from errors import ParseError
from services import sanitizer
from services.sanitizer import loads_lenient, repair, sanitize


class TestRepairs:
    """Each repair on its own, on the input shape it exists for."""

    def test_fenced_json_with_trailing_comma_and_nan(self):
        raw = '```json\n{"activities": [{"name": "Louvre Museum", "price": NaN, "duration": 2,},]}\n```'

        result = sanitize(raw)

        assert result.strategy == "direct"
        assert result.activities == [{"name": "Louvre Museum", "price": 0, "duration": 2}]
        assert json.loads(result.to_json())["activities"][0]["price"] == 0

    def test_quoted_price_range_becomes_average(self):
        assert sanitizer.average_numeric_ranges('{"price": "35-40"}') == '{"price": 37.5}'

    def test_range_inside_description_is_left_alone(self):
        text = '{"description": "Open 9-17 daily"}'
        assert sanitizer.average_numeric_ranges(text) == text

    def test_currency_symbol_before_number(self):
        assert sanitizer.strip_currency_symbols('{"price": $25}') == '{"price": 25}'

    def test_js_literals(self):
        assert sanitizer.replace_js_literals('{"a": undefined, "b": Infinity}') == '{"a": null, "b": 0}'

    def test_single_quotes_and_unquoted_keys(self):
        text = sanitizer.single_to_double_quotes("{'name': 'Louvre'}")
        assert text == '{"name": "Louvre"}'
        assert sanitizer.quote_unquoted_keys('{name: "Louvre", rating: 4}') == '{"name": "Louvre", "rating": 4}'

    def test_adjacent_objects_get_a_comma(self):
        assert sanitizer.fix_commas('[{"a": 1} {"a": 2}]') == '[{"a": 1},{"a": 2}]'

    def test_missing_comma_between_members(self):
        assert sanitizer.insert_missing_commas('{"name": "A" "price": 20}') == '{"name": "A", "price": 20}'

    def test_prose_around_json_is_dropped(self):
        text = 'Sure! Here is your plan: {"activities": []} Enjoy your trip.'
        assert sanitizer.trim_to_json(text) == '{"activities": []}'

    def test_bracketed_prose_before_json_is_skipped(self):
        text = 'Here is the plan {as requested}: {"activities": [{"name": "Louvre", "price": 20}]}'
        assert sanitizer.trim_to_json(text) == '{"activities": [{"name": "Louvre", "price": 20}]}'

    def test_back_to_back_objects_are_joined(self):
        text = '{"name": "Louvre", "price": 20} {"name": "Orsay", "price": 25}'
        assert sanitizer.trim_to_json(text) == '[{"name": "Louvre", "price": 20},{"name": "Orsay", "price": 25}]'

    def test_smart_quotes(self):
        assert sanitizer.normalize_smart_quotes("{“name”: “Louvre”}") == '{"name": "Louvre"}'

    @pytest.mark.parametrize("raw", [
        '```json\n{"activities": [{"name": "Louvre Museum", "price": NaN, "duration": 2,},]}\n```',
        "{'activities': [{'name': 'Orsay', 'price': '$18'}]}",
        '{activities: [{name: "Orsay" "price": 18} {name: "Louvre", price: 22,}]}',
    ])
    def test_repair_is_idempotent(self, raw):
        once = repair(raw)
        assert repair(once) == once

    def test_strings_are_not_rewritten(self):
        raw = '{"activities": [{"name": "Dinner, Show & Jazz", "description": "Say \\"hi\\", {name: x}"}]}'
        assert repair(raw) == raw


class TestSanitize:

    def test_broken_object_is_dropped_and_others_kept(self):
        raw = '{"activities": [{"name": "A", "price": 20}, {"name": "B", "price": }, {"name": "C", "price": 25}]}'

        result = sanitize(raw)

        assert result.strategy == "objects"
        assert [a["name"] for a in result.activities] == ["A", "C"]
        assert result.dropped == [1]

    def test_root_wrapper_is_unwrapped(self):
        raw = json.dumps({"itinerary": {"activities": [{"name": "Louvre"}]}})
        assert sanitize(raw).activities == [{"name": "Louvre"}]

    def test_day_grouped_payload_is_flattened_with_day_numbers(self):
        raw = json.dumps({"days": [
            {"dayNumber": 1, "activities": [{"name": "Louvre"}]},
            {"dayNumber": 2, "activities": [{"name": "Orsay"}, {"name": "Seine", "day": 3}]},
        ]})

        activities = sanitize(raw).activities

        assert activities == [
            {"name": "Louvre", "dayNumber": 1},
            {"name": "Orsay", "dayNumber": 2},
            {"name": "Seine", "day": 3},
        ]

    def test_non_object_items_are_reported_as_dropped(self):
        result = sanitize('{"activities": [{"name": "Louvre"}, "oops", 3]}')
        assert len(result.activities) == 1
        assert result.dropped == [1, 2]

    def test_braces_in_leading_prose(self):
        result = sanitize('Here is the plan {as requested}: {"activities": [{"name": "Louvre", "price": 20}]}')
        assert result.activities == [{"name": "Louvre", "price": 20}]

    def test_objects_on_separate_lines_are_all_kept(self):
        result = sanitize('{"name": "Louvre", "price": 20}\n{"name": "Orsay", "price": 25}')
        assert [a["name"] for a in result.activities] == ["Louvre", "Orsay"]

    def test_key_value_prose_is_dropped_with_its_object(self):
        result = sanitize('Tip {tip: book early} {"name": "Louvre", "price": 20}')
        assert [a["name"] for a in result.activities] == ["Louvre"]

    def test_prose_only_raises_parse_error(self):
        with pytest.raises(ParseError):
            sanitize("I'm sorry, I cannot help with that request.")

    def test_empty_input_raises_parse_error(self):
        with pytest.raises(ParseError):
            sanitize("")


class TestLoadsLenient:

    def test_parses_schedule_payload_with_repairs(self):
        payload = loads_lenient("```json\n{schedule: [{dayNumber: 1, activities: [],},]}\n```")
        assert payload == {"schedule": [{"dayNumber": 1, "activities": []}]}

    def test_unparseable_raises(self):
        with pytest.raises(ParseError):
            loads_lenient("no json here")
