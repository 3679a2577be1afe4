"""Narrowband telephony audio helpers.

Twilio Media Streams carry G.711 mu-law at 8 kHz, mono, in both directions.
"""
