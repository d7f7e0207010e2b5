"""
Seed company records for development and testing.
In production, employees live in Snowflake and requests in the SQL database.
"""

# Mock employee directory (in production, this is in Snowflake)
MOCK_EMPLOYEES = {
    "E001": {
        "employee_id": "E001",
        "name": "Alex Rivera",
        "email": "alex.rivera@example.com",
        "department": "Engineering",
        "level": "junior",
        "manager_id": "E003",
        "hire_date": "2023-02-13",
    },
    "E002": {
        "employee_id": "E002",
        "name": "Priya Shah",
        "email": "priya.shah@example.com",
        "department": "Marketing",
        "level": "senior",
        "manager_id": "E003",
        "hire_date": "2018-06-04",
    },
    "E003": {
        "employee_id": "E003",
        "name": "Morgan Lee",
        "email": "morgan.lee@example.com",
        "department": "Engineering",
        "level": "senior",
        "manager_id": None,
        "hire_date": "2015-09-21",
    },
    "E004": {
        "employee_id": "E004",
        "name": "Sam Okafor",
        "email": "sam.okafor@example.com",
        "department": "Finance",
        "level": "junior",
        "manager_id": "E003",
        "hire_date": "2025-01-06",
    },
}

PTO_BALANCES = {
    "E001": {"total_accrued": 15.0, "total_used": 0.0, "rollover_from_previous_year": 0.0},
    "E002": {"total_accrued": 25.0, "total_used": 5.0, "rollover_from_previous_year": 3.0},
    "E003": {"total_accrued": 25.0, "total_used": 7.0, "rollover_from_previous_year": 0.0},
    "E004": {"total_accrued": 4.0, "total_used": 2.0, "rollover_from_previous_year": 0.0},
}

# (event_type, name, start_date, end_date, description)
COMPANY_CALENDAR = [
    ("holiday", "New Year's Day", "2025-01-01", "2025-01-01", ""),
    ("holiday", "Martin Luther King Jr. Day", "2025-01-20", "2025-01-20", ""),
    ("holiday", "Presidents' Day", "2025-02-17", "2025-02-17", ""),
    ("holiday", "Memorial Day", "2025-05-26", "2025-05-26", ""),
    ("holiday", "Juneteenth", "2025-06-19", "2025-06-19", ""),
    ("holiday", "Independence Day", "2025-07-04", "2025-07-04", ""),
    ("holiday", "Labor Day", "2025-09-01", "2025-09-01", ""),
    ("holiday", "Thanksgiving", "2025-11-27", "2025-11-28", "Thursday and Friday"),
    ("holiday", "Christmas Day", "2025-12-25", "2025-12-25", ""),
    ("holiday", "New Year's Day", "2026-01-01", "2026-01-01", ""),
    ("holiday", "Martin Luther King Jr. Day", "2026-01-19", "2026-01-19", ""),
    ("blackout", "Q1 Close", "2025-03-24", "2025-03-31", "Quarter-end financial close"),
    ("blackout", "Q2 Close", "2025-06-23", "2025-06-30", "Quarter-end financial close"),
    ("blackout", "Q3 Close", "2025-09-22", "2025-09-30", "Quarter-end financial close"),
    ("blackout", "Year-End Close", "2025-12-22", "2025-12-31", "Annual close and audit prep"),
    ("blackout", "New Year Planning Week", "2026-01-02", "2026-01-09", "Annual planning"),
]

EMPLOYEE_HANDBOOK = """\
# Employee Handbook (excerpt)

## Paid Time Off
- Full-time employees accrue 15 days of PTO per year; senior staff accrue 20.
- Up to 5 unused days roll over into the next calendar year.
- PTO is counted in business days. Weekends and company holidays are not deducted.
- Junior employees may take up to 3 business days without manager review.
- Senior employees may take up to 10 business days without manager review.
- Longer requests are routed to your manager for approval.
- PTO cannot be taken during quarter-end blackout periods or the New Year planning week.
- If you do not have enough balance, you may ask for the request to be reviewed by
  your manager as partially unpaid leave.

## Expense Reimbursement
- Reimbursable categories: travel, meals, home office, training, software, supplies.
- Junior employees are auto-approved up to $100 per expense; senior employees up to $500.
- Any expense over $75 requires an itemized receipt.
- Meals are reimbursed up to $75 per person per day.
- Not reimbursable: alcohol, traffic or parking fines, family member travel,
  in-room movies or minibar charges, personal grooming, and gym memberships.
- Submit expenses within 60 days of the purchase date.

## Conduct
- Requests must be submitted by the employee taking the time off or incurring the cost.
- Managers record their decisions in the approvals system.
"""


def get_employee_data(employee_id: str):
    """Get mock employee data."""
    return MOCK_EMPLOYEES.get(employee_id)
