from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlsplit


@dataclass(frozen=True, slots=True)
class ColumnTarget:
    attribute: str

    def read(self, contact: Any) -> Any:
        return getattr(contact, self.attribute, None)


@dataclass(frozen=True, slots=True)
class CustomFieldTarget:
    key: str

    def read(self, contact: Any) -> Any:
        custom_fields = getattr(contact, "custom_fields", None)
        if not isinstance(custom_fields, dict):
            return None
        return custom_fields.get(self.key)


FieldTarget = ColumnTarget | CustomFieldTarget


@dataclass(frozen=True, slots=True)
class FieldMapping:
    name: str
    label: str
    extract: Callable[[Any], Any]
    target: FieldTarget


def is_empty_value(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, dict, set)):
        return len(value) == 0
    return False


def summarize_value(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        return f"{len(value)} items"
    if isinstance(value, dict):
        return f"{len(value)} fields"
    return str(value)


# Seniority

# First bucket with a keyword contained in the lower-cased title wins, so
# "director" lands in c_level through "cto".
_SENIORITY_RULES: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("c_level", ("ceo", "cto", "cfo", "chief", "president", "founder")),
    ("vp", ("vp", "vice president")),
    ("director", ("director", "head of")),
    ("senior", ("senior", "lead", "principal", "staff", "architect")),
    ("entry", ("junior", "entry", "associate", "intern")),
)


def derive_seniority(job_title: str | None) -> str | None:
    if not isinstance(job_title, str) or not job_title.strip():
        return None
    title = job_title.lower()
    for level, keywords in _SENIORITY_RULES:
        if any(keyword in title for keyword in keywords):
            return level
    return "mid"


# Company metadata

_SIZE_BUCKETS = ("startup", "small", "medium", "large", "enterprise")
_SIZE_RANGES = {
    "1-10": "startup",
    "11-50": "small",
    "51-200": "medium",
    "201-500": "medium",
    "501-1000": "large",
    "1001-5000": "large",
    "5001-10000": "enterprise",
    "10001+": "enterprise",
}


def derive_company_size(descriptor: Any) -> str | None:
    if not isinstance(descriptor, str) or not descriptor.strip():
        return None
    text = descriptor.lower().replace(" ", "")
    if text in _SIZE_RANGES:
        return _SIZE_RANGES[text]
    for bucket in _SIZE_BUCKETS:
        if bucket in text:
            return bucket
    return None


def derive_domain(website: Any) -> str | None:
    if not isinstance(website, str) or not website.strip():
        return None
    candidate = website.strip()
    if "://" not in candidate:
        candidate = f"http://{candidate}"
    try:
        hostname = urlsplit(candidate).hostname
    except ValueError:
        return None
    if not hostname or "." not in hostname:
        return None
    return hostname[4:] if hostname.startswith("www.") else hostname


def normalize_url(url: Any) -> str | None:
    if not isinstance(url, str) or not url.strip():
        return None
    url = url.strip()
    return url if url.lower().startswith("http") else f"https://{url}"


# Raw lead payload accessors

def _raw(lead: Any) -> dict[str, Any]:
    raw = getattr(lead, "raw_data", None)
    return raw if isinstance(raw, dict) else {}


def _raw_list(lead: Any, key: str) -> list[Any]:
    value = _raw(lead).get(key)
    return value if isinstance(value, list) else []


def _first_text(*values: Any) -> str | None:
    for value in values:
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _profiles(lead: Any, network: str | None = None) -> list[dict[str, Any]]:
    profiles = [item for item in _raw_list(lead, "profiles") if isinstance(item, dict)]
    if network is None:
        return profiles
    return [item for item in profiles if str(item.get("network", "")).lower() == network]


def _phone_number(entry: Any) -> str | None:
    if isinstance(entry, dict):
        return _first_text(entry.get("number"))
    return _first_text(entry)


def _email_address(entry: Any) -> str | None:
    if isinstance(entry, dict):
        return _first_text(entry.get("address"))
    return _first_text(entry)


def _emails_of_type(lead: Any, email_type: str) -> list[str]:
    addresses: list[str] = []
    for entry in _raw_list(lead, "emails"):
        if isinstance(entry, dict) and entry.get("type") == email_type:
            address = _email_address(entry)
            if address:
                addresses.append(address)
    return addresses


def most_recent_experience(lead: Any) -> dict[str, Any] | None:
    experiences = [item for item in _raw_list(lead, "experience") if isinstance(item, dict)]
    if not experiences:
        return None
    for item in experiences:
        if item.get("end_date") is None:
            return item
    return experiences[0]


def _experience_company(lead: Any) -> dict[str, Any]:
    experience = most_recent_experience(lead)
    company = experience.get("company") if experience else None
    return company if isinstance(company, dict) else {}


# Extractors

def _extract_phone(lead: Any) -> str | None:
    phone = _first_text(getattr(lead, "phone", None))
    if phone:
        return phone
    for entry in _raw_list(lead, "phone_numbers"):
        number = _phone_number(entry)
        if number:
            return number
    return None


def _extract_email(lead: Any) -> str | None:
    email = _first_text(getattr(lead, "email", None))
    if email:
        return email
    entries = _raw_list(lead, "emails")
    primary = [entry for entry in entries if isinstance(entry, dict) and entry.get("type") == "primary"]
    for entry in primary + entries:
        address = _email_address(entry)
        if address:
            return address
    return None


def _extract_job_title(lead: Any) -> str | None:
    return _first_text(getattr(lead, "job_title", None), _raw(lead).get("job_title"))


def _extract_linkedin_url(lead: Any) -> str | None:
    return normalize_url(_first_text(getattr(lead, "linkedin_url", None), _raw(lead).get("linkedin_url")))


def _extract_skills(lead: Any) -> list[str]:
    skills = getattr(lead, "skills", None)
    if not isinstance(skills, list) or not skills:
        skills = _raw_list(lead, "skills")
    return [str(skill) for skill in skills if skill]


def _extract_location(lead: Any) -> str | None:
    location = _first_text(getattr(lead, "location", None), _raw(lead).get("location_name"))
    if location:
        return location
    parts = [
        part
        for part in (_first_text(getattr(lead, "location_city", None)), _first_text(getattr(lead, "location_country", None)))
        if part
    ]
    return ", ".join(parts) or None


def _extract_industry(lead: Any) -> str | None:
    return _first_text(getattr(lead, "industry", None), _raw(lead).get("industry"))


def _extract_company_name(lead: Any) -> str | None:
    return _first_text(getattr(lead, "company_name", None), _raw(lead).get("job_company_name"))


def _extract_seniority(lead: Any) -> str | None:
    return derive_seniority(_extract_job_title(lead))


def _extract_social_profiles(lead: Any) -> list[dict[str, Any]]:
    profiles: list[dict[str, Any]] = []
    for item in _profiles(lead):
        entry = {
            "network": item.get("network"),
            "url": normalize_url(item.get("url")),
            "username": item.get("username"),
        }
        profiles.append({key: value for key, value in entry.items() if value})
    return [profile for profile in profiles if profile]


def _raw_list_extractor(key: str) -> Callable[[Any], list[Any]]:
    def extract(lead: Any) -> list[Any]:
        return list(_raw_list(lead, key))

    return extract


def _extract_phone_numbers(lead: Any) -> list[str]:
    numbers = [_phone_number(entry) for entry in _raw_list(lead, "phone_numbers")]
    return [number for number in numbers if number]


def _extract_websites(lead: Any) -> list[str]:
    urls = [normalize_url(item.get("url")) for item in _profiles(lead, "website")]
    return [url for url in urls if url]


def _extract_github_url(lead: Any) -> str | None:
    for item in _profiles(lead, "github"):
        url = normalize_url(item.get("url"))
        if url:
            return url
    return None


def _extract_twitter_handle(lead: Any) -> str | None:
    for item in _profiles(lead, "twitter"):
        username = _first_text(item.get("username"))
        if username is None:
            url = _first_text(item.get("url"))
            username = url.rstrip("/").rsplit("/", 1)[-1] if url else None
        if username:
            return username if username.startswith("@") else f"@{username}"
    return None


def _extract_company_info(lead: Any) -> dict[str, Any]:
    company = _experience_company(lead)
    location = company.get("location")
    info = {
        "name": company.get("name"),
        "industry": company.get("industry"),
        "size": company.get("size"),
        "website": company.get("website"),
        "linkedinUrl": normalize_url(company.get("linkedin_url")),
        "location": location.get("name") if isinstance(location, dict) else location,
    }
    return {key: value for key, value in info.items() if not is_empty_value(value)}


def lead_company_metadata(lead: Any) -> dict[str, Any]:
    raw = _raw(lead)
    company = _experience_company(lead)
    return {
        "industry": _first_text(company.get("industry"), raw.get("job_company_industry"), getattr(lead, "industry", None)),
        "website": _first_text(company.get("website"), raw.get("job_company_website")),
        "size": _first_text(company.get("size"), raw.get("job_company_size")),
        "description": _first_text(company.get("description"), raw.get("job_company_description")),
        "linkedin_url": normalize_url(_first_text(company.get("linkedin_url"), raw.get("job_company_linkedin_url"))),
    }


FIELD_MAPPINGS: dict[str, FieldMapping] = {
    mapping.name: mapping
    for mapping in (
        FieldMapping("phone", "Phone", _extract_phone, ColumnTarget("phone")),
        FieldMapping("email", "Email", _extract_email, ColumnTarget("email")),
        FieldMapping("jobTitle", "Job Title", _extract_job_title, ColumnTarget("job_title")),
        FieldMapping("linkedinUrl", "LinkedIn URL", _extract_linkedin_url, ColumnTarget("linkedin_url")),
        FieldMapping("skills", "Skills", _extract_skills, CustomFieldTarget("skills")),
        FieldMapping("education", "Education", _raw_list_extractor("education"), CustomFieldTarget("education")),
        FieldMapping("experience", "Work Experience", _raw_list_extractor("experience"), CustomFieldTarget("experience")),
        FieldMapping("location", "Location", _extract_location, CustomFieldTarget("location")),
        FieldMapping("industry", "Industry", _extract_industry, CustomFieldTarget("industry")),
        FieldMapping("companyName", "Current Company", _extract_company_name, CustomFieldTarget("currentCompany")),
        FieldMapping("seniorityLevel", "Seniority", _extract_seniority, ColumnTarget("seniority_level")),
        FieldMapping("socialProfiles", "Social Profiles", _extract_social_profiles, CustomFieldTarget("socialProfiles")),
        FieldMapping(
            "certifications",
            "Certifications",
            _raw_list_extractor("certifications"),
            CustomFieldTarget("certifications"),
        ),
        FieldMapping("languages", "Languages", _raw_list_extractor("languages"), CustomFieldTarget("languages")),
        FieldMapping("interests", "Interests", _raw_list_extractor("interests"), CustomFieldTarget("interests")),
        FieldMapping(
            "personalEmails",
            "Personal Emails",
            lambda lead: _emails_of_type(lead, "personal"),
            CustomFieldTarget("personalEmails"),
        ),
        FieldMapping(
            "workEmails",
            "Work Emails",
            lambda lead: _emails_of_type(lead, "work"),
            CustomFieldTarget("workEmails"),
        ),
        FieldMapping(
            "phoneNumbers",
            "Additional Phone Numbers",
            _extract_phone_numbers,
            CustomFieldTarget("phoneNumbers"),
        ),
        FieldMapping("websites", "Personal Websites", _extract_websites, CustomFieldTarget("websites")),
        FieldMapping("githubUrl", "GitHub Profile", _extract_github_url, CustomFieldTarget("githubUrl")),
        FieldMapping("twitterHandle", "Twitter Handle", _extract_twitter_handle, ColumnTarget("twitter_handle")),
        FieldMapping("companyInfo", "Company Details", _extract_company_info, CustomFieldTarget("companyInfo")),
    )
}

SUPPORTED_FIELDS = tuple(FIELD_MAPPINGS)
