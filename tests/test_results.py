from __future__ import annotations

import json
import unittest

from healthflow.results import (
    AnalysisParseError,
    parse_daily_summary_result,
    parse_meal_result,
    parse_unified_result,
    schema_version_of,
    validate_unified_result,
)

MEAL_BODY = {
    "schemaVersion": "1.0",
    "foodItems": [
        {"name": "Rice", "portionSize": "1 cup", "calories": 200, "confidence": 0.9},
        {"name": "Chicken", "portionSize": "120g", "calories": "250", "confidence": 0.8},
    ],
    "nutrition": {"totalCalories": 450, "protein": 35, "carbohydrates": 45, "fat": 12},
    "healthInsights": {"healthScore": 7.5, "summary": "Balanced plate.", "positives": ["protein"]},
    "confidence": 0.85,
    "warnings": [],
}


class ResultsTests(unittest.TestCase):
    def test_parse_unified_meal_wrapped_in_prose(self) -> None:
        body = json.dumps({"schemaVersion": "1.0", "entryType": "Meal", "confidence": 0.9, "mealAnalysis": MEAL_BODY})
        result = parse_unified_result(f"Here is the analysis:\n```json\n{body}\n```")

        self.assertEqual(result.entry_type, "Meal")
        self.assertEqual(len(result.meal_analysis.food_items), 2)
        self.assertEqual(result.meal_analysis.food_items[1].calories, 250)
        self.assertEqual(result.meal_analysis.nutrition.total_calories, 450)
        self.assertIsNone(result.exercise_analysis)

    def test_missing_entry_type_is_an_error(self) -> None:
        with self.assertRaises(AnalysisParseError):
            parse_unified_result(json.dumps({"mealAnalysis": MEAL_BODY}))

    def test_more_than_one_category_is_an_error(self) -> None:
        body = {"entryType": "Meal", "mealAnalysis": MEAL_BODY, "sleepAnalysis": {"durationHours": 7}}
        with self.assertRaises(AnalysisParseError):
            parse_unified_result(json.dumps(body))

    def test_malformed_json_is_an_error(self) -> None:
        with self.assertRaises(AnalysisParseError):
            parse_unified_result("not json at all")
        with self.assertRaises(AnalysisParseError):
            parse_unified_result("")

    def test_parse_meal_accepts_bare_and_wrapped_bodies(self) -> None:
        bare = parse_meal_result(json.dumps(MEAL_BODY))
        wrapped = parse_meal_result(json.dumps({"entryType": "Meal", "mealAnalysis": MEAL_BODY}))
        self.assertEqual(bare, wrapped)

        with self.assertRaises(AnalysisParseError):
            parse_meal_result(json.dumps({"entryType": "Sleep", "sleepAnalysis": {"durationHours": 8}}))

    def test_validation_flags_missing_sub_result(self) -> None:
        result = parse_unified_result(json.dumps({"entryType": "Exercise"}))
        validation = validate_unified_result(result)
        self.assertFalse(validation.is_valid)
        self.assertIn("exerciseAnalysis", validation.errors[0])

    def test_validation_warnings(self) -> None:
        body = {
            "entryType": "Meal",
            "confidence": 1.4,
            "mealAnalysis": {"foodItems": [], "healthInsights": {"healthScore": 14}, "warnings": ["blurry photo"]},
        }
        validation = validate_unified_result(parse_unified_result(json.dumps(body)))

        self.assertTrue(validation.is_valid)
        self.assertEqual(len(validation.warnings), 4)
        self.assertIn("blurry photo", validation.warnings)

    def test_parse_daily_summary(self) -> None:
        body = {
            "schemaVersion": "1.0",
            "totals": {"calories": 1850, "protein": 92.5},
            "balance": {"overall": "Good", "macroBalance": "Protein-forward"},
            "insights": ["Consistent meal timing"],
            "recommendations": ["Add vegetables at dinner"],
            "entriesIncluded": [{"entryId": 3, "capturedAt": "08:10"}, {"entryId": "x"}],
        }
        result = parse_daily_summary_result(json.dumps(body))

        self.assertEqual(result.totals.calories, 1850)
        self.assertEqual(result.balance.macro_balance, "Protein-forward")
        self.assertEqual([entry.entry_id for entry in result.entries_included], [3])

    def test_schema_version_of(self) -> None:
        self.assertEqual(schema_version_of(json.dumps({"schemaVersion": "1.0"})), "1.0")
        self.assertEqual(schema_version_of("garbage"), "unknown")
        self.assertEqual(schema_version_of(json.dumps({"entryType": "Meal"})), "unknown")


if __name__ == "__main__":
    unittest.main()
