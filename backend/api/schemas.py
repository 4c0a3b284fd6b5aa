from pydantic import BaseModel

# --- Telegram Webhook ---

class TelegramWebhookResponse(BaseModel):
    status: str = "ok"
