import qrcode
import qrcode.image.svg

# desktop strategy payloads are short URLs; anything longer is not ours
MAX_QR_PAYLOAD_LEN = 2048


def make_qr_svg_bytes(payload: str) -> bytes:
    if not payload or len(payload) > MAX_QR_PAYLOAD_LEN:
        raise ValueError("QR payload must be 1..%d characters" % MAX_QR_PAYLOAD_LEN)
    img = qrcode.make(payload, image_factory=qrcode.image.svg.SvgImage)
    return img.to_string()  # bytes, no args
