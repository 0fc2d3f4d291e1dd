import json
import os
import unittest
from pathlib import Path
import sys
from unittest.mock import MagicMock, patch

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

import carriers  # noqa: E402

APPLICANTS = [
    {"dob": "1985-04-12", "gender": "Female", "relationship": "Self", "smoker": False},
    {"dob": "2015-06-01T00:00:00Z", "gender": "Male", "relationship": "Child", "smoker": False},
    {"dob": "1984-01-02", "gender": "Male", "smoker": True, "dateLastSmoked": "2020-01-01", "eligibleRateTier": "Preferred"},
]
ENV = {"ALLSTATE_API_KEY": "key-1", "ALLSTATE_API_URL": "https://rates.test/", "ALLSTATE_AGENT_ID": "A-77"}


def rate_cart_response(payload) -> MagicMock:
    response = MagicMock()
    response.status = 200
    response.read.return_value = json.dumps(payload).encode("utf-8")
    manager = MagicMock()
    manager.__enter__.return_value = response
    return manager


def recalculate(**overrides):
    kwargs = {
        "zip_code": "33101",
        "state": "FL",
        "effective_date": "2026-11-01",
    }
    kwargs.update(overrides)
    return carriers.recalculate_plan_price("X", "PC-X", APPLICANTS, **kwargs)


class RateCartApplicantTests(unittest.TestCase):
    def test_applicant_mapping(self) -> None:
        mapped = carriers.build_rate_cart_applicants(APPLICANTS)
        self.assertEqual(mapped[0]["birthDate"], "1985-04-12T00:00:00.000Z")
        self.assertEqual(mapped[1]["birthDate"], "2015-06-01T00:00:00Z")
        self.assertEqual(mapped[0]["relationshipType"], "Primary")
        self.assertEqual(mapped[1]["relationshipType"], "Dependent")
        self.assertEqual(mapped[2]["relationshipType"], "Dependent")
        self.assertEqual([item["memberId"] for item in mapped], ["primary-001", "additional-001", "additional-002"])
        self.assertEqual(mapped[0]["rateTier"], "Standard")
        self.assertEqual(mapped[2]["rateTier"], "Preferred")
        self.assertTrue(mapped[2]["isSmoker"])
        self.assertEqual(mapped[2]["dateLastSmoked"], "2020-01-01")
        self.assertNotIn("dateLastSmoked", mapped[0])


class RateCartPriceTests(unittest.TestCase):
    def test_total_rate_fallback(self) -> None:
        response = {"plans": [{"planKey": "X", "totalRate": 120}]}
        with patch.dict(os.environ, ENV):
            with patch.object(carriers.urlrequest, "urlopen", return_value=rate_cart_response(response)) as urlopen:
                price = recalculate()

        self.assertEqual(price, 120)
        req = urlopen.call_args[0][0]
        self.assertEqual(req.full_url, "https://rates.test/RateCartAPI/api/RateCart")
        self.assertEqual(req.get_header("X-api-key"), "key-1")
        body = json.loads(req.data.decode("utf-8"))
        self.assertEqual(body["agentId"], "A-77")
        self.assertEqual(body["plansToRate"], [{"planKey": "X", "productCode": "PC-X", "paymentFrequency": "Monthly"}])

    def test_price_field_precedence(self) -> None:
        plan = {"planKey": "X", "insuranceRate": 0, "monthlyPremium": "88.10", "rate": 90, "totalRate": 120}
        self.assertEqual(carriers.extract_rate_cart_price(plan), 88.10)
        self.assertEqual(carriers.extract_rate_cart_price({"insuranceRate": 75.5, "totalRate": 120}), 75.5)
        self.assertIsNone(carriers.extract_rate_cart_price({"totalRate": 0}))

    def test_match_by_product_code(self) -> None:
        response = {"plans": [{"planKey": "other", "productCode": "PC-X", "rate": 64}]}
        with patch.dict(os.environ, ENV):
            with patch.object(carriers.urlrequest, "urlopen", return_value=rate_cart_response(response)):
                self.assertEqual(recalculate(), 64)

    def test_missing_plan(self) -> None:
        response = {"plans": [{"planKey": "Y", "productCode": "PC-Y", "totalRate": 10}]}
        with patch.dict(os.environ, ENV):
            with patch.object(carriers.urlrequest, "urlopen", return_value=rate_cart_response(response)):
                with self.assertRaises(carriers.RateCartError) as ctx:
                    recalculate()
        self.assertIn("not found", ctx.exception.message)

    def test_zero_price(self) -> None:
        response = {"plans": [{"planKey": "X", "totalRate": 0}]}
        with patch.dict(os.environ, ENV):
            with patch.object(carriers.urlrequest, "urlopen", return_value=rate_cart_response(response)):
                with self.assertRaises(carriers.RateCartError):
                    recalculate()

    def test_timeout_is_a_rate_cart_error(self) -> None:
        with patch.dict(os.environ, ENV):
            with patch.object(carriers.urlrequest, "urlopen", side_effect=TimeoutError("timed out")):
                with self.assertRaises(carriers.RateCartError) as ctx:
                    recalculate()
        self.assertTrue(ctx.exception.message.startswith("Rate/Cart API error: "))

    def test_missing_api_key(self) -> None:
        with patch.dict(os.environ, {"ALLSTATE_API_KEY": ""}):
            with self.assertRaises(carriers.RateCartError):
                recalculate()


if __name__ == "__main__":
    unittest.main()
