"""KPI Coach: suggestion and action-dispatch engine for the driving-school CRM"""

__version__ = "1.0.0"
