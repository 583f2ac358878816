from __future__ import annotations

"""Localized chat replies (``en`` and ``id``).

``render(name, locale, **params)`` falls back to English when the locale or
the template is unknown.
"""

from typing import Dict

DEFAULT_LOCALE = "en"

CURRENCY_SYMBOLS: Dict[str, str] = {
    "USD": "$",
    "EUR": "€",
    "GBP": "£",
    "JPY": "¥",
    "IDR": "Rp",
    "CNY": "¥",
    "KRW": "₩",
    "SGD": "S$",
    "MYR": "RM",
    "THB": "฿",
    "VND": "₫",
}

TEMPLATES: Dict[str, Dict[str, str]] = {
    "en": {
        "pairing_instructions": (
            "🔒 *Account not linked*\n\n"
            "This chat number is not linked to an account yet.\n\n"
            "To link it:\n"
            "1. Open the app and go to the chat integration page\n"
            "2. Generate an activation code\n"
            "3. Send: {keyword}: [CODE]\n\n"
            "Example: {keyword}: ABC123"
        ),
        "activation_success": (
            "✅ *Chat linked!*\n\n"
            "You can now:\n"
            "• log transactions by text\n"
            "• log transactions by voice note\n"
            "• scan receipts by photo\n"
            "• check your monthly summary\n\n"
            'Type "help" for the full guide, or just send a transaction like "Lunch 50000".'
        ),
        "activation_invalid": "❌ The activation code is invalid or has expired.",
        "activation_identity_bound": "❌ This chat number is already linked to another account.",
        "activation_error": "❌ Something went wrong while activating. Please try again.",
        "help": (
            "🤖 *Finance assistant*\n\n"
            "1️⃣ *Text:* \"Lunch 75000\", \"Salary 5000000\", \"Yesterday fuel 50000\"\n"
            "2️⃣ *Voice:* hold the mic button and say the transaction\n"
            "3️⃣ *Photo:* send a receipt for automatic logging\n\n"
            "Other commands:\n"
            '• "help" - show this message\n'
            '• "balance" - monthly summary\n'
            '• "status" - connection status'
        ),
        "status": (
            "✅ *Connection status*\n\n"
            "🔗 Linked to your account\n"
            "📱 Number: {identity}\n"
            "🤖 The bot is active and ready to log transactions"
        ),
        "balance_empty": (
            "📊 *Summary*\n\n"
            "No transactions yet.\n\n"
            'Start by sending something like "Lunch 50000" or a receipt photo.'
        ),
        "balance_summary": (
            "📊 *Summary ({period})*\n\n"
            "📥 *Income:* {income}\n"
            "📤 *Expense:* {expense}\n"
            "💰 *Balance:* {balance}\n\n"
            "*Recent transactions:*\n{recent}"
        ),
        "processing_voice": "🎤 Processing your voice note...",
        "processing_image": "📸 Processing your receipt...",
        "transaction_confirmed": (
            "✅ *Transaction saved*\n\n"
            "💰 Amount: {amount}\n"
            "📝 Description: {description}\n"
            "📂 Category: {category}\n"
            "📊 Type: {type_label}\n"
            "🎯 Confidence: {confidence}%"
        ),
        "transactions_confirmed": "✅ *{count} transactions saved*\n\n{lines}",
        "clarify_text": (
            "🤔 I couldn't find a transaction in that message.\n\n"
            'Try something like "Lunch 50000" or "Salary 5000000".'
        ),
        "clarify_voice": "🎤 I couldn't understand the voice note. Please speak clearly and mention the amount.",
        "clarify_image": "📸 I couldn't read that receipt. Please send a sharper, well-lit photo.",
        "unsupported": (
            "🤖 *Message type not supported*\n\n"
            "I can process:\n"
            "• 📝 text messages\n"
            "• 🎤 voice notes\n"
            "• 📸 receipt photos\n\n"
            'Send "help" for the full guide.'
        ),
        "reminder": (
            "🔔 *Daily transaction reminder*\n\n"
            "It looks like you haven't logged any transactions today.\n\n"
            "You can:\n"
            '• reply with an expense (e.g. "Lunch 50000")\n'
            "• send a receipt photo 📸\n\n"
            "Keep up the habit of tracking your money! 📊"
        ),
        "error_generic": "❌ Sorry, something went wrong while processing your message. Please try again later.",
        "expense": "Expense",
        "income": "Income",
    },
    "id": {
        "pairing_instructions": (
            "🔒 *Akun Belum Terhubung*\n\n"
            "Nomor Anda belum terhubung ke akun.\n\n"
            "Cara menghubungkan:\n"
            "1. Buka aplikasi dan masuk ke menu integrasi chat\n"
            "2. Buat kode aktivasi\n"
            "3. Kirim pesan: {keyword}: [KODE]\n\n"
            "Contoh: {keyword}: ABC123"
        ),
        "activation_success": (
            "✅ *Akun Berhasil Terhubung!*\n\n"
            "Fitur yang tersedia:\n"
            "• catat transaksi via teks\n"
            "• catat transaksi via suara\n"
            "• scan struk/nota otomatis\n"
            "• cek ringkasan keuangan\n\n"
            'Ketik "bantuan" untuk panduan lengkap, atau langsung kirim transaksi seperti "Makan siang 50000".'
        ),
        "activation_invalid": "❌ Kode aktivasi tidak valid atau sudah kadaluarsa.",
        "activation_identity_bound": "❌ Nomor ini sudah terhubung ke akun lain.",
        "activation_error": "❌ Terjadi kesalahan saat memproses aktivasi. Silakan coba lagi.",
        "help": (
            "🤖 *Asisten Keuangan*\n\n"
            "1️⃣ *Teks:* \"Makan siang 75000\", \"Gaji 5000000\", \"Kemarin beli bensin 50000\"\n"
            "2️⃣ *Suara:* tekan dan tahan tombol mikrofon, lalu ucapkan transaksi\n"
            "3️⃣ *Foto:* kirim foto struk untuk pencatatan otomatis\n\n"
            "Perintah lain:\n"
            '• "bantuan" - lihat pesan ini\n'
            '• "saldo" - ringkasan bulanan\n'
            '• "status" - status koneksi'
        ),
        "status": (
            "✅ *Status Koneksi*\n\n"
            "🔗 Terhubung dengan akun Anda\n"
            "📱 Nomor: {identity}\n"
            "🤖 Bot aktif dan siap mencatat transaksi"
        ),
        "balance_empty": (
            "📊 *Ringkasan Keuangan*\n\n"
            "Belum ada transaksi yang tercatat.\n\n"
            'Mulai dengan mengirim pesan seperti "Makan siang 50000" atau foto struk.'
        ),
        "balance_summary": (
            "📊 *Ringkasan Keuangan ({period})*\n\n"
            "📥 *Pemasukan:* {income}\n"
            "📤 *Pengeluaran:* {expense}\n"
            "💰 *Saldo:* {balance}\n\n"
            "*Transaksi terakhir:*\n{recent}"
        ),
        "processing_voice": "🎤 Memproses pesan suara...",
        "processing_image": "📸 Memproses gambar struk...",
        "transaction_confirmed": (
            "✅ *Transaksi Berhasil Dicatat!*\n\n"
            "💰 Jumlah: {amount}\n"
            "📝 Deskripsi: {description}\n"
            "📂 Kategori: {category}\n"
            "📊 Jenis: {type_label}\n"
            "🎯 Tingkat Kepercayaan: {confidence}%"
        ),
        "transactions_confirmed": "✅ *{count} transaksi berhasil dicatat*\n\n{lines}",
        "clarify_text": (
            "🤔 Saya tidak menemukan transaksi dalam pesan tersebut.\n\n"
            'Coba tulis seperti "Makan siang 50000" atau "Gaji 5000000".'
        ),
        "clarify_voice": "🎤 Pesan suara tidak dapat dipahami. Ucapkan dengan jelas dan sebutkan jumlahnya.",
        "clarify_image": "📸 Struk tidak dapat dibaca. Kirim foto yang lebih jelas dan terang.",
        "unsupported": (
            "🤖 *Jenis Pesan Tidak Didukung*\n\n"
            "Saya dapat memproses:\n"
            "• 📝 pesan teks\n"
            "• 🎤 pesan suara\n"
            "• 📸 foto struk/nota\n\n"
            'Kirim "bantuan" untuk panduan lengkap.'
        ),
        "reminder": (
            "🔔 *Pengingat Transaksi Harian*\n\n"
            "Sepertinya Anda belum mencatat transaksi apa pun hari ini.\n\n"
            "Anda bisa:\n"
            '• balas dengan pengeluaran Anda (contoh: "Makan siang 50000")\n'
            "• kirim foto struk belanja 📸\n\n"
            "Terus pertahankan kebiasaan mencatat keuangan! 📊"
        ),
        "error_generic": "❌ Maaf, terjadi kesalahan dalam memproses pesan Anda. Silakan coba lagi nanti.",
        "expense": "Pengeluaran",
        "income": "Pemasukan",
    },
}


def resolve_locale(locale: str | None, default: str = DEFAULT_LOCALE) -> str:
    loc = (locale or "").strip().lower().split("-")[0].split("_")[0]
    if loc in TEMPLATES:
        return loc
    return default if default in TEMPLATES else DEFAULT_LOCALE


def render(name: str, locale: str | None = None, **params: object) -> str:
    table = TEMPLATES[resolve_locale(locale)]
    template = table.get(name) or TEMPLATES[DEFAULT_LOCALE][name]
    return template.format(**params) if params else template


def format_amount(amount: float, currency: str = "USD") -> str:
    """Grouped with '.' and ',' as decimal mark: format_amount(50000, 'IDR') -> 'Rp50.000'."""
    code = (currency or "USD").upper()
    symbol = CURRENCY_SYMBOLS.get(code, code)
    sign = "-" if amount < 0 else ""
    value = abs(amount)
    text = f"{value:,.0f}" if float(value).is_integer() else f"{value:,.2f}"
    text = text.replace(",", "\0").replace(".", ",").replace("\0", ".")
    return f"{sign}{symbol}{text}"
