"""
Reasoning layer

Prompt rendering, reasoning-service clients and structured decision
parsing for the Sentinel and CEO loops. Nothing here can place an order;
decisions flow back through the trading gate and executor.
"""
