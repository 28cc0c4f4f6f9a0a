# src/treadmill/dev/schema.py
"""
Runtime JSON-Schema definitions for on-disk artefacts.
"""

BACKLOG_V1 = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "title": "TreadmillBacklog",
    "type": "object",
    "required": ["projectName", "features"],
    "properties": {
        "projectName": {"type": "string"},
        "features": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["id", "priority", "title", "passes"],
                "properties": {
                    "id": {"type": ["string", "integer"]},
                    "priority": {"type": "integer"},
                    "title": {"type": "string"},
                    "description": {"type": "string"},
                    "acceptanceCriteria": {
                        "type": "array",
                        "items": {"type": "string"},
                    },
                    "passes": {"type": "boolean"},
                },
            },
        },
        "ciConfig": {
            "type": ["object", "null"],
            "properties": {
                "testCommand": {"type": ["string", "null"]},
                "buildCommand": {"type": ["string", "null"]},
            },
            "additionalProperties": False,
        },
    },
}
