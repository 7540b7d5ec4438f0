"""
Inverter command layer.

Translates abstract charging modes into inverter-family wire vocabulary and
defines the message bus port commands are published through.
"""
