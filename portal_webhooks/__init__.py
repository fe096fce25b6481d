"""Payment webhook intake for the customer/billing portal."""
