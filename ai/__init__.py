"""
AI Decision Module

Drives the reasoning backend through a bounded number of turns per symbol.
The backend proposes buy/sell/hold through tool calls; the executor and its
trade restrictions decide whether anything actually happens.
"""
