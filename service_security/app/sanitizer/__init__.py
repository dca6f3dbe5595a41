"""
Input threat sanitizer package.

- rules: Versioned, table-driven threat rules (hard findings and soft
  banking warnings).
- threat_sanitizer: Validation, sanitization and risk scoring for single
  values, forms, URLs and nested payloads.
- input_monitor: Continuous validation of a live input field.
"""
