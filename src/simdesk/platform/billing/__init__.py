"""
Billing: exchange rates, money handling and credit notes.
"""
