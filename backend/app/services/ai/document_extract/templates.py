"""Extraction templates: instruction text + target JSON shape per document type.

The registry is built once at import and never mutated. ``json_schema`` hands
out a fresh copy on every access so callers cannot alter the shared template.
"""

from __future__ import annotations

import copy
import json
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from .contracts import DocumentType

_HEADER: dict[str, Any] = {
    "documentType": "",
    "confidenceScore": 0,
    "metadata": {
        "detectedLanguage": "",
        "imageQuality": "low | medium | high",
    },
}

_LINE_ITEMS: list[dict[str, Any]] = [
    {
        "description": "",
        "quantity": None,
        "unitPrice": None,
        "total": None,
    }
]


def _schema(body: dict[str, Any]) -> dict[str, Any]:
    return {**copy.deepcopy(_HEADER), **body, "rawText": ""}


@dataclass(frozen=True)
class ExtractionTemplate:
    label: str
    instruction_text: str
    schema_text: str = field(repr=False)

    @classmethod
    def build(cls, label: str, instruction_text: str, schema: dict[str, Any]) -> "ExtractionTemplate":
        return cls(label=label, instruction_text=instruction_text, schema_text=json.dumps(schema, indent=2))

    @property
    def json_schema(self) -> dict[str, Any]:
        return json.loads(self.schema_text)


IDENTITY_TEMPLATE = ExtractionTemplate.build(
    "ID Document",
    "You are a document analysis AI specializing in identity documents (national IDs, passports, "
    "driver's licenses). Extract every visible field from the document accurately.",
    _schema(
        {
            "idInfo": {
                "idType": "",
                "idNumber": "",
                "firstName": "",
                "lastName": "",
                "middleName": "",
                "gender": "",
                "birthdate": "",
                "nationality": "",
                "address": "",
                "issuingAuthority": "",
                "issuingCountry": "",
                "issueDate": "",
                "expirationDate": "",
            },
        }
    ),
)

INVOICE_TEMPLATE = ExtractionTemplate.build(
    "Invoice",
    "You are a document analysis AI specializing in invoices. Extract every vendor, client, "
    "line-item, and financial field visible in the document.",
    _schema(
        {
            "vendor": {"name": "", "address": "", "phone": "", "email": "", "taxId": "", "website": ""},
            "client": {"name": "", "address": "", "phone": "", "email": ""},
            "invoiceDetails": {
                "invoiceNumber": "",
                "date": "",
                "dueDate": "",
                "purchaseOrderNumber": "",
                "paymentTerms": "",
                "notes": "",
                "subtotal": None,
                "discount": None,
                "tax": None,
                "shipping": None,
                "total": None,
                "currency": "",
            },
            "items": _LINE_ITEMS,
        }
    ),
)

RECEIPT_TEMPLATE = ExtractionTemplate.build(
    "Receipt",
    "You are a document analysis AI specializing in receipts. Extract every merchant detail, "
    "purchased item, and payment field visible in the document.",
    _schema(
        {
            "merchant": {"name": "", "address": "", "phone": "", "taxId": ""},
            "receiptDetails": {
                "receiptNumber": "",
                "date": "",
                "time": "",
                "cashier": "",
                "paymentMethod": "",
                "subtotal": None,
                "discount": None,
                "tax": None,
                "tip": None,
                "total": None,
                "currency": "",
            },
            "items": _LINE_ITEMS,
        }
    ),
)

BUSINESS_CARD_TEMPLATE = ExtractionTemplate.build(
    "Business Card",
    "You are a document analysis AI specializing in business cards. Extract every contact detail, "
    "title, company, and social handle visible on the card.",
    _schema(
        {
            "contact": {
                "firstName": "",
                "lastName": "",
                "title": "",
                "company": "",
                "department": "",
                "phone": "",
                "mobilePhone": "",
                "email": "",
                "website": "",
                "address": "",
                "linkedin": "",
                "twitter": "",
            },
        }
    ),
)

CONTRACT_TEMPLATE = ExtractionTemplate.build(
    "Contract / Agreement",
    "You are a document analysis AI specializing in legal contracts and agreements. Extract party "
    "information, key dates, terms, and signatories visible in the document.",
    _schema(
        {
            "contractInfo": {
                "title": "",
                "contractNumber": "",
                "effectiveDate": "",
                "expirationDate": "",
                "governingLaw": "",
            },
            "parties": [{"name": "", "role": "", "address": ""}],
            "keyTerms": [],
            "signatories": [{"name": "", "role": "", "signedDate": ""}],
        }
    ),
)

MEDICAL_TEMPLATE = ExtractionTemplate.build(
    "Medical Document",
    "You are a document analysis AI specializing in medical documents (prescriptions, lab results, "
    "medical records). Extract patient info, provider details, diagnoses, and medications visible "
    "in the document.",
    _schema(
        {
            "patient": {"firstName": "", "lastName": "", "birthdate": "", "gender": "", "patientId": ""},
            "provider": {
                "name": "",
                "specialty": "",
                "licenseNumber": "",
                "facility": "",
                "address": "",
                "phone": "",
            },
            "documentDate": "",
            "diagnosis": [],
            "medications": [{"name": "", "dosage": "", "frequency": "", "quantity": ""}],
            "notes": "",
        }
    ),
)

FORM_TEMPLATE = ExtractionTemplate.build(
    "Form",
    "You are a document analysis AI specializing in forms and structured documents. Extract every "
    "labeled field, checkbox, and entry visible in the form.",
    _schema(
        {
            "formTitle": "",
            "formNumber": "",
            "date": "",
            "fields": {},
            "signatures": [],
        }
    ),
)

OTHER_TEMPLATE = ExtractionTemplate.build(
    "Other Document",
    "You are a document analysis AI. Extract all readable key-value information, tables, and text "
    "from this document.",
    _schema({"keyValuePairs": {}, "tables": []}),
)

DOCUMENT_TEMPLATES: MappingProxyType[DocumentType, ExtractionTemplate] = MappingProxyType(
    {
        DocumentType.ID: IDENTITY_TEMPLATE,
        DocumentType.PASSPORT: IDENTITY_TEMPLATE,
        DocumentType.DRIVERS_LICENSE: IDENTITY_TEMPLATE,
        DocumentType.INVOICE: INVOICE_TEMPLATE,
        DocumentType.RECEIPT: RECEIPT_TEMPLATE,
        DocumentType.BUSINESS_CARD: BUSINESS_CARD_TEMPLATE,
        DocumentType.CONTRACT: CONTRACT_TEMPLATE,
        DocumentType.MEDICAL: MEDICAL_TEMPLATE,
        DocumentType.FORM: FORM_TEMPLATE,
        DocumentType.OTHER: OTHER_TEMPLATE,
    }
)


def normalize_document_type(tag: Any) -> DocumentType:
    """Map a free-form tag onto ``DocumentType``; anything unrecognised is ``OTHER``."""
    if isinstance(tag, DocumentType):
        return tag
    if not isinstance(tag, str):
        return DocumentType.OTHER
    key = tag.strip().lower().replace("-", "_").replace(" ", "_")
    try:
        return DocumentType(key)
    except ValueError:
        return DocumentType.OTHER


def get_template(tag: Any) -> ExtractionTemplate:
    return DOCUMENT_TEMPLATES[normalize_document_type(tag)]


def valid_types() -> tuple[DocumentType, ...]:
    return tuple(DOCUMENT_TEMPLATES.keys())
