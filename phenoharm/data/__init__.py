"""
Loading, fetching and combining study phenotype data
"""
