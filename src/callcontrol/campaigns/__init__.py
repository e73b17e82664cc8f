"""
Campaigns package: bulk outbound dialing under a line budget.
"""
