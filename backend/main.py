import logging
import time
import uuid
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel
from solders.keypair import Keypair

from content_store import ContentStore, create_store_engine
from errors import ConfigurationError, MarketplaceError
from image_provider import FreepikClient, build_prompt
from ledger import Ledger, RpcLedger
from marketplace import (
    MintRequest,
    estimate_fees,
    get_nft_details,
    mint_nft,
    parse_pubkey,
    prepare_buy,
    prepare_list,
)
from settings import Settings, load_service_keypair
from signatures import SignatureVerifier
from submitter import submit_signed_transaction

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("artmint")

MAX_IMAGES_PER_REQUEST = 4

settings = Settings()
LEDGER: Optional[Ledger] = None
SERVICE_KEYPAIR: Optional[Keypair] = None
CONTENT_STORE: Optional[ContentStore] = None

app = FastAPI(title="ArtMint API", version="0.1.0")


def get_ledger() -> Ledger:
    global LEDGER
    if LEDGER is None:
        LEDGER = RpcLedger.from_settings(settings)
    return LEDGER


def get_service_keypair() -> Keypair:
    global SERVICE_KEYPAIR
    if SERVICE_KEYPAIR is None:
        SERVICE_KEYPAIR = load_service_keypair(settings)
    return SERVICE_KEYPAIR


def get_verifier() -> SignatureVerifier:
    return SignatureVerifier.from_settings(settings)


def get_image_provider() -> FreepikClient:
    if not settings.freepik_api_key:
        raise ConfigurationError("FREEPIK_API_KEY not configured")
    return FreepikClient.from_settings(settings)


def get_content_store() -> ContentStore:
    global CONTENT_STORE
    if CONTENT_STORE is None:
        CONTENT_STORE = ContentStore(create_store_engine(settings.database_url))
    return CONTENT_STORE


def success(data) -> dict:
    return {"success": True, "data": data}


@app.exception_handler(MarketplaceError)
async def marketplace_error_handler(request: Request, exc: MarketplaceError):
    if exc.status_code >= 500:
        logger.warning("request_failed path=%s code=%s error=%s", request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.to_dict()})


class MintNftRequest(BaseModel):
    name: str
    symbol: str
    image_url: str
    creator_address: str
    signature: str
    message: str


class GenerateImagesRequest(BaseModel):
    prompt: str
    style: Optional[str] = None
    count: Optional[int] = None


class GenerateAndMintRequest(BaseModel):
    name: str
    symbol: str
    prompt: str
    style: Optional[str] = None
    creator_address: str
    signature: str
    message: str


class ListBuildRequest(BaseModel):
    seller: str
    mint: str
    price: int


class BuyBuildRequest(BaseModel):
    buyer: str
    listing: str


class SubmitTxRequest(BaseModel):
    signed_tx_b64: str


@app.on_event("startup")
def startup_event():
    # Refuse to boot with a verification bypass outside development.
    SignatureVerifier.from_settings(settings)
    logger.info("artmint_started env=%s rpc=%s", settings.app_env, settings.rpc_url)


@app.get("/health")
def health():
    return {"status": "ok", "app_env": settings.app_env}


def _mint_with_image(
    image_url: str,
    name: str,
    symbol: str,
    creator_address: str,
    signature: str,
    message: str,
    ledger: Ledger,
    service: Keypair,
    verifier: SignatureVerifier,
    store: ContentStore,
) -> dict:
    short_id = store.shorten(image_url)
    image_short_url = f"{settings.public_base_url.rstrip('/')}/image/{short_id}"
    request = MintRequest(
        name=name,
        symbol=symbol,
        uri=image_short_url,
        creator=creator_address,
        signature=signature,
        message=message,
    )
    result = mint_nft(ledger, service, request, verifier)
    data = result.to_dict()
    data["image_short_url"] = image_short_url
    data["minted_at"] = time.time()
    return data


@app.post("/nft/mint")
def mint(
    req: MintNftRequest,
    ledger: Ledger = Depends(get_ledger),
    service: Keypair = Depends(get_service_keypair),
    verifier: SignatureVerifier = Depends(get_verifier),
    store: ContentStore = Depends(get_content_store),
):
    data = _mint_with_image(
        req.image_url, req.name, req.symbol, req.creator_address, req.signature, req.message,
        ledger, service, verifier, store,
    )
    return success(data)


@app.post("/nft/generate-and-mint")
def generate_and_mint(
    req: GenerateAndMintRequest,
    ledger: Ledger = Depends(get_ledger),
    service: Keypair = Depends(get_service_keypair),
    verifier: SignatureVerifier = Depends(get_verifier),
    provider: FreepikClient = Depends(get_image_provider),
    store: ContentStore = Depends(get_content_store),
):
    # Check the creator before paying for an image.
    verifier.require(req.message.encode(), req.signature, parse_pubkey(req.creator_address, "creator"))
    image_url = provider.generate_image(req.prompt, req.style)
    data = _mint_with_image(
        image_url, req.name, req.symbol, req.creator_address, req.signature, req.message,
        ledger, service, verifier, store,
    )
    data["image_url"] = image_url
    return success(data)


@app.get("/nft/{mint}")
def nft_details(mint: str, ledger: Ledger = Depends(get_ledger)):
    return success(get_nft_details(ledger, mint).to_dict())


@app.get("/fees/estimate")
def fees_estimate(ledger: Ledger = Depends(get_ledger)):
    return success(estimate_fees(ledger).to_dict())


@app.post("/marketplace/list/build")
def build_list(req: ListBuildRequest, ledger: Ledger = Depends(get_ledger)):
    return success(prepare_list(ledger, req.seller, req.mint, req.price).to_dict())


@app.post("/marketplace/buy/build")
def build_buy(req: BuyBuildRequest, ledger: Ledger = Depends(get_ledger)):
    return success(prepare_buy(ledger, req.buyer, req.listing).to_dict())


@app.post("/tx/submit")
def submit_tx(req: SubmitTxRequest, ledger: Ledger = Depends(get_ledger)):
    signature = submit_signed_transaction(ledger, req.signed_tx_b64)
    return success({"signature": str(signature)})


@app.get("/image/{short_id}")
def image_redirect(short_id: str, store: ContentStore = Depends(get_content_store)):
    url = store.resolve(short_id)
    if url is None:
        raise HTTPException(status_code=404, detail="Image not found")
    return RedirectResponse(url)


@app.post("/images/generate")
def generate_images(req: GenerateImagesRequest, provider: FreepikClient = Depends(get_image_provider)):
    build_prompt(req.prompt, req.style)
    count = min(max(req.count or 1, 1), MAX_IMAGES_PER_REQUEST)
    request_id = f"req_{uuid.uuid4().hex}"
    images = []
    for i in range(count):
        images.append(
            {
                "id": f"{request_id}_{i}",
                "url": provider.generate_image(req.prompt, req.style),
                "prompt": req.prompt,
                "style": req.style,
                "created_at": time.time(),
            }
        )
    logger.info("images_generated request=%s count=%s", request_id, count)
    return success({"images": images, "request_id": request_id})
