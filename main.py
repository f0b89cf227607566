import os

from flask import Flask, jsonify

app = Flask(__name__)

@app.route("/")
def home():
    return "Solana Trading Bot is running! Use Telegram to manage your wallet."

@app.route("/health")
def health():
    return jsonify({"status": "ok"})

if __name__ == "__main__":
    app.run(host="0.0.0.0", port=int(os.getenv("PORT", "5000")))
