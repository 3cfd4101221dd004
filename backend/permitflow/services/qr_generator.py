"""
QR code images for pre-printed inspection issue cards
"""

import io
import qrcode
from PIL import Image

from ..core.config import settings


class QRCodeGenerator:
    """Generate QR codes that point a scanning inspector at an issue card"""

    def __init__(self, base_url: str = None):
        self.base_url = (base_url or settings.PUBLIC_APP_URL).rstrip("/")
        self.default_settings = {
            'version': 1,  # grows with fit=True
            'error_correction': qrcode.constants.ERROR_CORRECT_M,
            'border': 4,
        }

    def issue_url(self, municipality_id: str, issue_number: str) -> str:
        return f"{self.base_url}/municipalities/{municipality_id}/issues/{issue_number}"

    async def generate_qr_code(
        self,
        data: str,
        size: int = 300,
        format: str = "PNG",
        error_correction: str = "M"
    ) -> bytes:
        """
        Generate a QR code for given data

        Args:
            data: Data to encode
            size: Width and height of the image in pixels
            format: Image format (PNG, JPEG, ...)
            error_correction: Error correction level (L, M, Q, H)

        Returns:
            QR code image as bytes
        """
        error_levels = {
            "L": qrcode.constants.ERROR_CORRECT_L,
            "M": qrcode.constants.ERROR_CORRECT_M,
            "Q": qrcode.constants.ERROR_CORRECT_Q,
            "H": qrcode.constants.ERROR_CORRECT_H,
        }

        # Version 1 has 21x21 modules; fit=True may pick a larger version
        estimated_modules = 21
        box_size = max(1, size // (estimated_modules + 2 * self.default_settings['border']))

        qr = qrcode.QRCode(
            version=self.default_settings['version'],
            error_correction=error_levels.get(error_correction, self.default_settings['error_correction']),
            box_size=box_size,
            border=self.default_settings['border'],
        )
        qr.add_data(data)
        qr.make(fit=True)

        img = qr.make_image(fill_color="black", back_color="white").get_image()
        if img.size[0] != size:
            img = img.resize((size, size), Image.Resampling.LANCZOS)

        buffer = io.BytesIO()
        img.save(buffer, format=format)
        return buffer.getvalue()

    async def generate_issue_card_qr(self, municipality_id: str, issue_number: str, size: int = 300) -> bytes:
        return await self.generate_qr_code(self.issue_url(municipality_id, issue_number), size=size)


qr_generator = QRCodeGenerator()
