import copy
from datetime import date
from typing import Any, Dict, List, Optional

PREVIEW_ENRICHMENT_TYPE = "find-lists-of-companies-with-mixrank-source-preview"
SOURCE_ACTION_KEY = "find-lists-of-companies-with-mixrank-source"
SOURCE_ACTION_PACKAGE_ID = "e251a70e-46d7-4f3a-b3ef-a211ad3d8bd2"
WIZARD_ID = "find-companies"
WIZARD_STEP_ID = "companies-search"

_SIZE_OPTIONS = [
    ("d84c757f-2e85-4c86-a906-ee58f9e67ff5", "Self-employed", "yellow"),
    ("0a6c5b94-d606-4e65-a14e-0cccfdbe451a", "2-10 employees", "blue"),
    ("47162660-fe09-46dc-9ee2-6fb0863fa87d", "11-50 employees", "green"),
    ("ae2d4c77-9f2f-4a0b-9977-c51fc7a92bdc", "51-200 employees", "red"),
    ("abf125d7-c104-4079-a499-0b83273bc402", "201-500 employees", "violet"),
    ("b3d556bc-7235-4c19-8d4d-0a7ef35eb641", "501-1,000 employees", "grey"),
    ("99f3077b-c62f-49fa-9c5a-17bd491502d5", "1,001-5,000 employees", "orange"),
    ("94ec907c-6f15-4913-8b10-dd07b67909ce", "5,001-10,000 employees", "pink"),
    ("a9f27362-ea22-4751-82c2-ef66240dda10", "10,001+ employees", "yellow"),
]

# Destination columns for a company table, mapped from the search source.
BASIC_FIELDS: List[Dict[str, Any]] = [
    {"name": "Name", "dataType": "text", "formulaText": "{{source}}.name"},
    {"name": "Description", "dataType": "text", "formulaText": "{{source}}.description"},
    {"name": "Primary Industry", "dataType": "text", "formulaText": "{{source}}.industry"},
    {
        "name": "Size",
        "dataType": "select",
        "formulaText": "{{source}}.size",
        "options": [{"id": oid, "text": text, "color": color} for oid, text, color in _SIZE_OPTIONS],
    },
    {"name": "Type", "dataType": "text", "formulaText": "{{source}}.type"},
    {"name": "Location", "dataType": "text", "formulaText": "{{source}}.location"},
    {"name": "Country", "dataType": "text", "formulaText": "{{source}}.country"},
    {"name": "Domain", "dataType": "url", "formulaText": "{{source}}.domain"},
    {"name": "LinkedIn URL", "dataType": "url", "formulaText": "{{source}}.linkedin_url", "isDedupeField": True},
]

# The search action rejects payloads with missing keys, so every input is sent.
_LIST_INPUTS = (
    "industries",
    "sizes",
    "country_names",
    "annual_revenues",
    "locations",
    "description_keywords",
    "industries_exclude",
    "country_names_exclude",
    "locations_exclude",
    "description_keywords_exclude",
    "types",
    "funding_amounts",
    "company_identifier",
    "exclude_company_identifiers_mixed",
    "exclude_entities_configuration",
    "derived_industries",
    "derived_subindustries",
    "derived_subindustries_exclude",
    "derived_revenue_streams",
    "derived_business_types",
)
_NULLABLE_INPUTS = (
    "minimum_follower_count",
    "minimum_member_count",
    "maximum_member_count",
    "exclude_entities_bitmap",
    "previous_entities_bitmap",
    "tableId",
    "domainFieldId",
    "radialKnnMinScore",
    "has_resolved_domain",
    "resolved_domain_is_live",
    "resolved_domain_redirects",
)

NO_MATCH_MESSAGE = (
    "No companies found matching these filters. Try broadening your search criteria "
    "(fewer industries, larger geography, or lower minimum employee count)."
)
NO_MATCH_SUGGESTIONS = [
    "Reduce the number of industries or use broader categories",
    "Remove or lower the minimum employee count",
    "Expand the geographic scope",
    "Remove annual revenue filters",
    "Simplify description keywords",
]


def build_search_inputs(criteria: Dict[str, Any], default_limit: int = 100) -> Dict[str, Any]:
    inputs: Dict[str, Any] = {}
    for key in _LIST_INPUTS:
        inputs[key] = list(criteria.get(key) or [])
    for key in _NULLABLE_INPUTS:
        inputs[key] = criteria.get(key)
    inputs["limit"] = criteria.get("limit") or default_limit
    inputs["semantic_description"] = criteria.get("semantic_description") or ""
    inputs["startFromCompanyType"] = criteria.get("startFromCompanyType") or "company_identifier"
    inputs["useRadialKnn"] = bool(criteria.get("useRadialKnn") or False)
    inputs["name"] = criteria.get("name") or ""
    return inputs


def build_preview_payload(workspace_id: str, criteria: Dict[str, Any], default_limit: int = 100) -> Dict[str, Any]:
    return {
        "workspaceId": workspace_id,
        "enrichmentType": PREVIEW_ENRICHMENT_TYPE,
        "options": {"sync": True, "returnTaskId": True, "returnActionMetadata": True},
        "inputs": build_search_inputs(criteria, default_limit),
    }


def build_wizard_payload(
    criteria: Dict[str, Any],
    task_id: str,
    field_template: List[Dict[str, Any]],
    session_id: str,
    *,
    workbook_id: Optional[str] = None,
    default_limit: int = 100,
) -> Dict[str, Any]:
    # The wizard does not reuse the preview's filter state; the full criteria go in again.
    return {
        "workbookId": workbook_id,
        "wizardId": WIZARD_ID,
        "wizardStepId": WIZARD_STEP_ID,
        "formInputs": {
            "clientSettings": {"tableType": "company"},
            "requiredDataPoint": None,
            "basicFields": copy.deepcopy(field_template),
            "previewActionTaskId": task_id,
            "type": "companies",
            "typeSettings": {
                "name": "Find companies",
                "iconType": "Buildings",
                "actionKey": SOURCE_ACTION_KEY,
                "actionPackageId": SOURCE_ACTION_PACKAGE_ID,
                "previewTextPath": "name",
                "defaultPreviewText": "Profile",
                "recordsPath": "companies",
                "idPath": "linkedin_company_id",
                "scheduleConfig": {"runSettings": "once"},
                "inputs": build_search_inputs(criteria, default_limit),
                "hasEvaluatedInputs": True,
                "previewActionKey": PREVIEW_ENRICHMENT_TYPE,
            },
        },
        "sessionId": session_id,
        "currentStepIndex": 0,
        "outputs": [],
        "firstUseCase": None,
        "parentFolderId": None,
    }


def summarize_filters(criteria: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "industries": len(criteria.get("industries") or []),
        "countries": len(criteria.get("country_names") or []),
        "min_employees": criteria.get("minimum_member_count"),
        "has_revenue_filter": bool(criteria.get("annual_revenues")),
    }


def default_table_name(client: str, today: Optional[date] = None) -> str:
    day = (today or date.today()).isoformat()
    return f"{client} - Find Companies {day}"
