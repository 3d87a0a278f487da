COUNTRY_CODE = "254"


def normalize_phone(phone: str) -> str:
    """
    Normalize a Kenyan phone number to the 2547XXXXXXXX form the gateway expects.

    0712345678    -> 254712345678
    254712345678  -> 254712345678
    +254712345678 -> 254712345678
    712345678     -> 254712345678
    """
    cleaned = "".join(str(phone).split())
    if cleaned.startswith("+"):
        cleaned = cleaned[1:]
    if not cleaned:
        raise ValueError("Phone number is empty")

    if cleaned.startswith("0"):
        return COUNTRY_CODE + cleaned[1:]
    if cleaned.startswith(COUNTRY_CODE):
        return cleaned
    return COUNTRY_CODE + cleaned
