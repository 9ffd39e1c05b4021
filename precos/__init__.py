"""Acompanhamento de preços a partir de NFC-e."""
