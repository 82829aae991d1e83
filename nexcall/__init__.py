"""
NexCall - AI voice agent backend for Twilio calls.
"""
