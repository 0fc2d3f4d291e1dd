"""Carrier enrollment and rate/cart adapters.

The enrollment API validates field names and order strictly, so payloads are
rebuilt key by key instead of forwarding the stored enrollment document.
"""

from __future__ import annotations

import json
import os
import re
from datetime import date, timedelta
from typing import Any, Callable, Dict, List, Optional
from urllib import error as urlerror
from urllib import request as urlrequest

import structlog

logger = structlog.get_logger(__name__)

ALLSTATE_DEFAULT_ENROLLMENT_URL = "https://qa1-ngahservices.ngic.com/EnrollmentAPI/api/Enrollment"
ALLSTATE_DEFAULT_API_URL = "https://qa1-ngahservices.ngic.com"
ALLSTATE_DEFAULT_AGENT_ID = "159208"
CARRIER_TIMEOUT_SECONDS = float(os.getenv("CARRIER_TIMEOUT_SECONDS", "30"))

ERROR_TEXT_LIMIT = 500
DEMOGRAPHIC_FIELDS_DROPPED = {"address2", "alternatePhone", "zipCodePlus4", "applicants"}
RATE_CART_PRICE_FIELDS = ("insuranceRate", "monthlyPremium", "rate", "totalRate")
DEFAULT_RATE_TIER = "Standard"

RELATIONSHIP_CANONICAL = {
    "primary": "Primary",
    "self": "Primary",
    "spouse": "Spouse",
    "wife": "Spouse",
    "husband": "Spouse",
}

_FRACTIONAL_SECONDS = re.compile(r"\.\d+(?=(Z|[+-]\d{2}:?\d{2})?$)")


class CarrierAPIError(Exception):
    """A carrier call failed; ``message`` is safe to show to staff."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        payload: Any = None,
    ) -> None:
        self.message = message
        self.status_code = status_code
        self.payload = payload
        super().__init__(message)


class RateCartError(CarrierAPIError):
    pass


# ----------------------
# Field normalization
# ----------------------

def normalize_relationship(value: Optional[str]) -> str:
    text = (value or "").strip().lower()
    if not text:
        return "Primary"
    return RELATIONSHIP_CANONICAL.get(text, "Dependent")


def strip_fractional_seconds(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    return _FRACTIONAL_SECONDS.sub("", value.strip())


def parse_day(value: Any) -> Optional[date]:
    text = str(value or "").strip()
    if len(text) < 10:
        return None
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        return None


def adjust_effective_date(value: Any, today: Optional[date] = None) -> Any:
    """Move an effective date that is today or earlier to tomorrow."""
    effective = parse_day(value)
    if effective is None:
        return value
    today = today or date.today()
    if effective > today:
        return value
    adjusted = (today + timedelta(days=1)).isoformat()
    logger.warning(
        "Effective date advanced for carrier submission",
        requested=value,
        adjusted=adjusted,
    )
    return adjusted


def to_int(value: Any) -> Any:
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return value


def single_line(text: str, limit: int = ERROR_TEXT_LIMIT) -> str:
    return " ".join(str(text).split())[:limit]


# ----------------------
# Enrollment payload
# ----------------------

def build_applicant(applicant: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "applicantId": applicant.get("applicantId"),
        "firstName": applicant.get("firstName"),
        "lastName": applicant.get("lastName"),
        "gender": applicant.get("gender"),
        "relationship": normalize_relationship(applicant.get("relationship")),
        "ssn": applicant.get("ssn"),
        "dob": strip_fractional_seconds(applicant.get("dob")),
        "smoker": applicant.get("smoker"),
        "weight": applicant.get("weight"),
        "heightFeet": applicant.get("heightFeet"),
        "heightInches": applicant.get("heightInches"),
        "phoneNumbers": applicant.get("phoneNumbers") or [],
        "questionResponses": applicant.get("questionResponses") or [],
    }


def build_demographics(data: Dict[str, Any]) -> Dict[str, Any]:
    raw = data.get("demographics") or {}
    applicants = raw.get("applicants") or data.get("applicants") or []
    clean = {key: value for key, value in raw.items() if key not in DEMOGRAPHIC_FIELDS_DROPPED}
    address1 = clean.get("address1")
    if isinstance(address1, str):
        address1 = address1.strip()
    is_e_fulfillment = clean.get("isEFulfillment")
    return {
        "zipCode": clean.get("zipCode"),
        "email": clean.get("email"),
        "address1": address1,
        "city": clean.get("city"),
        "state": clean.get("state"),
        "phone": clean.get("phone"),
        "applicants": [build_applicant(applicant) for applicant in applicants],
        "isEFulfillment": True if is_e_fulfillment is None else is_e_fulfillment,
    }


def build_coverage(coverage: Dict[str, Any], today: Optional[date] = None) -> Dict[str, Any]:
    return {
        "planKey": coverage.get("planKey"),
        "monthlyPremium": coverage.get("monthlyPremium"),
        "effectiveDate": adjust_effective_date(coverage.get("effectiveDate"), today=today),
        "paymentFrequency": coverage.get("paymentFrequency"),
        "applicants": coverage.get("applicants") or [],
    }


def build_payment_information(payment: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not payment:
        return None
    result: Dict[str, Any] = {
        "accountHolderFirstName": payment.get("accountHolderFirstName"),
        "accountHolderLastName": payment.get("accountHolderLastName"),
        "accountType": payment.get("accountType"),
    }
    if payment.get("accountType") == "CreditCard":
        result.update(
            {
                "creditCardNumber": payment.get("creditCardNumber"),
                "expirationMonth": to_int(payment.get("expirationMonth")),
                "expirationYear": to_int(payment.get("expirationYear")),
                "cvv": payment.get("cvv"),
                "cardBrand": payment.get("cardBrand"),
            }
        )
    else:
        result.update(
            {
                "accountTypeBank": payment.get("accountTypeBank"),
                "accountNumber": payment.get("accountNumber"),
                "routingNumber": payment.get("routingNumber"),
                "bankName": payment.get("bankName"),
                "desiredDraftDate": payment.get("desiredDraftDate"),
            }
        )
    return result


def build_enrollment_payload(data: Dict[str, Any], today: Optional[date] = None) -> Dict[str, Any]:
    is_e_fulfillment = data.get("isEFulfillment")
    return {
        "demographics": build_demographics(data),
        "coverages": [build_coverage(coverage, today=today) for coverage in data.get("coverages") or []],
        "paymentInformation": build_payment_information(data.get("paymentInformation")),
        "partnerInformation": data.get("partnerInformation") or {},
        "attestationInformation": data.get("attestationInformation") or {},
        "enrollmentDate": data.get("enrollmentDate"),
        "isEFulfillment": True if is_e_fulfillment is None else is_e_fulfillment,
    }


# ----------------------
# Transport
# ----------------------

def decode_carrier_error(status_code: Optional[int], body: str) -> str:
    fallback = f"Carrier API error ({status_code})" if status_code else "Carrier API error"
    text = (body or "").strip()
    if not text:
        return fallback
    try:
        parsed = json.loads(text)
    except ValueError:
        return single_line(text)

    if isinstance(parsed, list):
        if not parsed or not isinstance(parsed[0], dict):
            return fallback
        first = parsed[0]
        detail = first.get("errorDetail")
        if detail:
            try:
                decoded = json.loads(detail) if isinstance(detail, str) else detail
            except ValueError:
                return single_line(detail)
            messages: List[str] = []
            if isinstance(decoded, dict):
                for value in decoded.values():
                    if isinstance(value, list):
                        messages.extend(str(item) for item in value)
                    elif value:
                        messages.append(str(value))
            elif isinstance(decoded, list):
                messages.extend(str(item) for item in decoded)
            elif decoded:
                messages.append(str(decoded))
            return single_line(messages[0]) if messages else single_line(str(detail))
        if first.get("errorCode"):
            return single_line(f"Error {first['errorCode']}: Unknown error")
        return fallback

    if isinstance(parsed, dict):
        for key in ("message", "Message", "detail", "title", "error"):
            value = parsed.get(key)
            if value:
                return single_line(str(value))
        return fallback
    return single_line(text)


def post_carrier_json(
    url: str,
    body: Dict[str, Any],
    headers: Dict[str, str],
    *,
    error_class: type = CarrierAPIError,
    error_prefix: str = "",
) -> Any:
    req = urlrequest.Request(
        url,
        data=json.dumps(body).encode("utf-8"),
        headers={"Content-Type": "application/json", "Accept": "application/json", **headers},
        method="POST",
    )
    try:
        with urlrequest.urlopen(req, timeout=CARRIER_TIMEOUT_SECONDS) as resp:
            status = resp.status
            raw = resp.read().decode("utf-8", errors="replace").strip()
    except urlerror.HTTPError as exc:
        try:
            detail = exc.read().decode("utf-8", errors="replace")
        except OSError:
            detail = str(exc)
        message = decode_carrier_error(exc.code, detail)
        logger.error("Carrier request failed", url=url, status_code=exc.code, body=detail[:ERROR_TEXT_LIMIT])
        payload: Any
        try:
            payload = json.loads(detail)
        except ValueError:
            payload = detail[:ERROR_TEXT_LIMIT]
        raise error_class(f"{error_prefix}{message}", status_code=exc.code, payload=payload) from exc
    except urlerror.URLError as exc:
        logger.error("Carrier unreachable", url=url, error=str(exc.reason))
        raise error_class(f"{error_prefix}Carrier request failed: {exc.reason}") from exc
    except OSError as exc:
        # Timeouts and dropped connections while reading the response are not wrapped in URLError.
        reason = str(exc) or type(exc).__name__
        logger.error("Carrier request interrupted", url=url, error=reason)
        raise error_class(f"{error_prefix}Carrier request failed: {reason}") from exc

    if status >= 300:
        raise error_class(f"{error_prefix}{decode_carrier_error(status, raw)}", status_code=status, payload=raw)
    if not raw:
        return {}
    try:
        return json.loads(raw)
    except ValueError as exc:
        raise error_class(
            f"{error_prefix}Carrier returned an unreadable response: {single_line(raw, 200)}",
            status_code=status,
            payload=raw[:ERROR_TEXT_LIMIT],
        ) from exc


def submit_enrollment(enrollment_data: Dict[str, Any]) -> Any:
    url = os.getenv("ALLSTATE_ENROLLMENT_URL", "").strip() or ALLSTATE_DEFAULT_ENROLLMENT_URL
    token = os.getenv("ALLSTATE_AUTH_TOKEN", "").strip()
    if not token:
        raise CarrierAPIError("ALLSTATE_AUTH_TOKEN is not configured")

    payload = build_enrollment_payload(enrollment_data)
    logger.info(
        "Submitting enrollment",
        carrier="allstate",
        url=url,
        applicants=len(payload["demographics"]["applicants"]),
        coverages=len(payload["coverages"]),
    )
    result = post_carrier_json(url, payload, {"Authorization": f"Basic {token}"})
    logger.info("Enrollment accepted", carrier="allstate", policy_number=extract_policy_number(result))
    return result


def extract_policy_number(response: Any) -> Optional[str]:
    if not isinstance(response, dict):
        return None
    for key in ("policyNumber", "PolicyNumber", "policy_number"):
        value = response.get(key)
        if value:
            return str(value)
    for nested in response.values():
        if isinstance(nested, dict):
            found = extract_policy_number(nested)
            if found:
                return found
    return None


# ----------------------
# Rate/Cart
# ----------------------

def normalize_birth_date(value: Any) -> Any:
    if not isinstance(value, str) or not value.strip() or "T" in value:
        return value
    day = parse_day(value)
    if day is None:
        return value
    return f"{day.isoformat()}T00:00:00.000Z"


def build_rate_cart_applicants(applicants: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    mapped: List[Dict[str, Any]] = []
    for index, applicant in enumerate(applicants):
        relationship = applicant.get("relationship")
        item: Dict[str, Any] = {
            "birthDate": normalize_birth_date(applicant.get("dob")),
            "gender": applicant.get("gender"),
            "relationshipType": normalize_relationship(relationship)
            if relationship
            else ("Primary" if index == 0 else "Dependent"),
            "isSmoker": bool(applicant.get("smoker")),
            "hasPriorCoverage": bool(applicant.get("hasPriorCoverage")),
            "rateTier": applicant.get("eligibleRateTier") or DEFAULT_RATE_TIER,
            "memberId": applicant.get("applicantId")
            or ("primary-001" if index == 0 else f"additional-{index:03d}"),
        }
        if applicant.get("dateLastSmoked"):
            item["dateLastSmoked"] = applicant["dateLastSmoked"]
        mapped.append(item)
    return mapped


def find_rate_cart_plan(
    response: Any, plan_key: Optional[str], product_code: Optional[str]
) -> Optional[Dict[str, Any]]:
    plans = response.get("plans") if isinstance(response, dict) else None
    for plan in plans or []:
        if not isinstance(plan, dict):
            continue
        if plan_key and plan.get("planKey") == plan_key:
            return plan
        if product_code and plan.get("productCode") == product_code:
            return plan
    return None


def extract_rate_cart_price(plan: Dict[str, Any]) -> Optional[float]:
    for field in RATE_CART_PRICE_FIELDS:
        value = plan.get(field)
        try:
            price = float(value) if value is not None else 0.0
        except (TypeError, ValueError):
            continue
        if price:
            return price
    return None


def recalculate_plan_price(
    plan_key: str,
    product_code: str,
    applicants: List[Dict[str, Any]],
    *,
    zip_code: str,
    state: str,
    effective_date: str,
    payment_frequency: str = "Monthly",
) -> float:
    api_url = (os.getenv("ALLSTATE_API_URL", "").strip() or ALLSTATE_DEFAULT_API_URL).rstrip("/")
    api_key = os.getenv("ALLSTATE_API_KEY", "").strip()
    agent_id = os.getenv("ALLSTATE_AGENT_ID", "").strip() or ALLSTATE_DEFAULT_AGENT_ID
    if not api_key:
        raise RateCartError("ALLSTATE_API_KEY is not configured")

    request_body = {
        "agentId": agent_id,
        "effectiveDate": effective_date,
        "zipCode": zip_code,
        "state": state,
        "applicants": build_rate_cart_applicants(applicants),
        "paymentFrequency": payment_frequency,
        "plansToRate": [
            {
                "planKey": plan_key,
                "productCode": product_code,
                "paymentFrequency": payment_frequency,
            }
        ],
    }
    logger.info(
        "Re-rating plan before enrollment",
        plan_key=plan_key,
        product_code=product_code,
        applicants=len(applicants),
        effective_date=effective_date,
    )
    response = post_carrier_json(
        f"{api_url}/RateCartAPI/api/RateCart",
        request_body,
        {"x-api-key": api_key},
        error_class=RateCartError,
        error_prefix="Rate/Cart API error: ",
    )
    plan = find_rate_cart_plan(response, plan_key, product_code)
    if plan is None:
        raise RateCartError(f"Plan {plan_key} not found in Rate/Cart response", payload=response)
    price = extract_rate_cart_price(plan)
    if not price:
        raise RateCartError(f"No price available for plan {plan_key} in Rate/Cart response", payload=plan)
    logger.info("Plan re-rated", plan_key=plan_key, price=price, previous_total=plan.get("totalRate"))
    return price


# ----------------------
# Registry
# ----------------------

ENROLLMENT_SUBMITTERS: Dict[str, Callable[[Dict[str, Any]], Any]] = {
    "allstate": submit_enrollment,
}
RATE_CART_CARRIERS = {"allstate"}
DEFAULT_CARRIER_SLUG = "allstate"


def get_enrollment_submitter(slug: Optional[str]) -> Optional[Callable[[Dict[str, Any]], Any]]:
    return ENROLLMENT_SUBMITTERS.get((slug or DEFAULT_CARRIER_SLUG).strip().lower())


def supports_rate_cart(slug: Optional[str]) -> bool:
    return (slug or DEFAULT_CARRIER_SLUG).strip().lower() in RATE_CART_CARRIERS
