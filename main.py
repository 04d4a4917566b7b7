"""
Main application file for Jarbook.
All routes consolidated here - no separate router files.

Every /api/v1 route reads the caller's user id from the X-User-Id header,
set by the authentication layer in front of this service.
"""

from typing import Optional
from fastapi import FastAPI, Request, Depends, Header, HTTPException
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
import logging
import business_logic
import database_manager as db
import jar_business_logic as jarbl
import goal_business_logic as goalbl
import recurring_business_logic as recbl
from errors import NotFoundError, TransactionFailure

# Setup logging
logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"

# Initialize app
app = FastAPI(title="Jarbook")

# Background recurrence runner, created on startup when enabled
scheduler: Optional[recbl.RecurrenceScheduler] = None


@app.on_event("startup")
def startup_event():
    """Initialize application on startup."""
    global scheduler
    logger.info("Starting Jarbook application...")
    try:
        settings = business_logic.initialize_database()
        if business_logic.DATABASE_CONFIGURED:
            logger.info("Database initialized successfully")
            if settings.recurrence_enabled:
                scheduler = recbl.RecurrenceScheduler(
                    interval_seconds=settings.recurrence_interval_seconds,
                    default_tz_offset_minutes=settings.default_tz_offset_minutes
                )
                scheduler.start()
        else:
            logger.warning("Database not configured - provide jarbook_config.json")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        # Don't raise - allow app to start so the configuration can be fixed
    logger.info("Jarbook application started")


@app.on_event("shutdown")
def shutdown_event():
    """Stop the recurrence scheduler and release the database."""
    global scheduler
    if scheduler is not None:
        scheduler.stop()
        scheduler = None
    if business_logic.DATABASE_CONFIGURED:
        db.close_connection()
    logger.info("Jarbook application stopped")


# ==================== HELPERS ====================

@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.detail}
    )


def current_user_id(x_user_id: Optional[str] = Header(None)) -> str:
    """Trusted user id supplied by the authentication layer."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id.strip()


async def read_json(request: Request) -> dict:
    """Request body as a dict. Empty body -> {}."""
    body = await request.body()
    if not body:
        return {}
    data = await request.json()
    if not isinstance(data, dict):
        raise ValueError("Request body must be a JSON object")
    return data


def error_response(e: Exception, action: str) -> JSONResponse:
    """
    Map an exception to the API error shape.

    NotFoundError -> 404, KeyError -> 400 (missing field), ValueError -> 400
    with its message, TransactionFailure -> 500 with its message. Anything
    else is a 500 with a generic message.
    """
    if isinstance(e, NotFoundError):
        return JSONResponse(status_code=404, content={"success": False, "error": str(e)})
    if isinstance(e, KeyError):
        return JSONResponse(
            status_code=400,
            content={"success": False, "error": f"Missing required field: {e}"}
        )
    if isinstance(e, ValueError):
        return JSONResponse(status_code=400, content={"success": False, "error": str(e)})
    if isinstance(e, TransactionFailure):
        logger.error(f"Transaction failure while {action}: {e}")
        return JSONResponse(status_code=500, content={"success": False, "error": str(e)})

    logger.error(f"Error {action}: {e}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": "Internal server error"}
    )


# ==================== HEALTH CHECK ====================

@app.get("/health")
async def health_check():
    """
    Health check endpoint for Docker and monitoring.

    Tests actual database connectivity by executing a simple query.
    Returns 200 if healthy, 503 if database is unreachable.
    """
    try:
        if not business_logic.DATABASE_CONFIGURED:
            return JSONResponse(
                status_code=503,
                content={
                    "status": "unhealthy",
                    "reason": "Database not configured"
                }
            )

        if db.check_connection():
            return {
                "status": "healthy",
                "database": "connected",
                "scheduler": "running" if scheduler is not None and scheduler.running else "stopped"
            }
        return JSONResponse(
            status_code=503,
            content={
                "status": "unhealthy",
                "reason": "Database connection lost"
            }
        )
    except Exception as e:
        logger.error(f"Health check failed: {e}")
        return JSONResponse(
            status_code=503,
            content={
                "status": "unhealthy",
                "reason": "Health check error"
            }
        )


# ==================== JAR API ROUTES ====================

@app.get(f"{API_PREFIX}/jars")
async def list_jars(user_id: str = Depends(current_user_id)):
    """Get all jars (primary first, newest first)."""
    try:
        return {"success": True, "data": jarbl.get_jars(user_id)}
    except Exception as e:
        return error_response(e, "getting jars")


@app.post(f"{API_PREFIX}/jars")
async def create_jar(request: Request, user_id: str = Depends(current_user_id)):
    """
    Create jar with zero balance.

    Request body:
    {
        "name": "Travel",
        "color": "#3b82f6",   # optional
        "is_primary": false    # optional
    }
    """
    try:
        data = await read_json(request)
        result = jarbl.create_jar(
            user_id,
            name=data["name"],
            color=data.get("color"),
            is_primary=data.get("is_primary", False)
        )
        return {"success": True, "data": result}
    except Exception as e:
        return error_response(e, "creating jar")


@app.delete(f"{API_PREFIX}/jars/{{jar_id}}")
async def delete_jar(jar_id: str, user_id: str = Depends(current_user_id)):
    """Delete an empty jar."""
    try:
        jarbl.delete_jar(user_id, jar_id)
        return {"success": True}
    except Exception as e:
        return error_response(e, f"deleting jar {jar_id}")


@app.post(f"{API_PREFIX}/jars/{{jar_id}}/fund")
async def fund_jar(jar_id: str, request: Request, user_id: str = Depends(current_user_id)):
    """
    Move money from free cash into a jar.

    Request body:
    {
        "amount": 5000,
        "memo": "Optional memo"
    }
    """
    try:
        data = await read_json(request)
        result = jarbl.fund_jar(user_id, jar_id, data["amount"], memo=data.get("memo"))
        return {"success": True, "data": result}
    except Exception as e:
        return error_response(e, f"funding jar {jar_id}")


@app.post(f"{API_PREFIX}/jars/{{jar_id}}/withdraw")
async def withdraw_jar(jar_id: str, request: Request, user_id: str = Depends(current_user_id)):
    """Move money from a jar back to free cash. Same body as fund."""
    try:
        data = await read_json(request)
        result = jarbl.withdraw_jar(user_id, jar_id, data["amount"], memo=data.get("memo"))
        return {"success": True, "data": result}
    except Exception as e:
        return error_response(e, f"withdrawing from jar {jar_id}")


@app.post(f"{API_PREFIX}/jars/transfer")
async def transfer_between_jars(request: Request, user_id: str = Depends(current_user_id)):
    """
    Move money from one jar to another.

    Request body:
    {
        "from_jar_id": "abc123",
        "to_jar_id": "def456",
        "amount": 1000,
        "memo": "Optional memo"
    }
    """
    try:
        data = await read_json(request)
        result = jarbl.transfer_between_jars(
            user_id,
            from_jar_id=data.get("from_jar_id"),
            to_jar_id=data.get("to_jar_id"),
            amount=data["amount"],
            memo=data.get("memo")
        )
        return {"success": True, "data": result}
    except Exception as e:
        return error_response(e, "transferring between jars")


@app.get(f"{API_PREFIX}/jars/transfers/history")
async def transfer_history(user_id: str = Depends(current_user_id)):
    """Get the latest 200 transfers, newest first."""
    try:
        return {"success": True, "data": jarbl.get_transfer_history(user_id)}
    except Exception as e:
        return error_response(e, "getting transfer history")


# ==================== GOAL API ROUTES ====================

@app.get(f"{API_PREFIX}/goals")
async def list_goals(user_id: str = Depends(current_user_id)):
    """Get all goals, newest first."""
    try:
        return {"success": True, "data": goalbl.get_goals(user_id)}
    except Exception as e:
        return error_response(e, "getting goals")


@app.post(f"{API_PREFIX}/goals")
async def create_goal(request: Request, user_id: str = Depends(current_user_id)):
    """
    Create goal.

    Request body:
    {
        "title": "Laptop",
        "target_amount": 30000,
        "target_date": "2025-06-30",
        "jar_id": "abc123",
        "auto_allocate": {"enabled": true, "type": "percent", "value": 20}   # optional
    }
    """
    try:
        data = await read_json(request)
        result = goalbl.create_goal(
            user_id,
            title=data["title"],
            target_amount=data["target_amount"],
            target_date=data["target_date"],
            jar_id=data["jar_id"],
            auto_allocate=data.get("auto_allocate")
        )
        return {"success": True, "data": result}
    except Exception as e:
        return error_response(e, "creating goal")


@app.patch(f"{API_PREFIX}/goals/{{goal_id}}/status")
async def update_goal_status(goal_id: str, request: Request,
                             user_id: str = Depends(current_user_id)):
    """
    Pause, resume or expire a goal.

    Request body:
    {
        "status": "paused"
    }
    """
    try:
        data = await read_json(request)
        result = goalbl.update_goal_status(user_id, goal_id, data["status"])
        return {"success": True, "data": result}
    except Exception as e:
        return error_response(e, f"updating goal {goal_id}")


@app.delete(f"{API_PREFIX}/goals/{{goal_id}}")
async def delete_goal(goal_id: str, user_id: str = Depends(current_user_id)):
    """Delete goal. Money stays in its jar."""
    try:
        goalbl.delete_goal(user_id, goal_id)
        return {"success": True}
    except Exception as e:
        return error_response(e, f"deleting goal {goal_id}")


@app.post(f"{API_PREFIX}/goals/{{goal_id}}/fund")
async def fund_goal(goal_id: str, request: Request, user_id: str = Depends(current_user_id)):
    """
    Move money from free cash into the goal's jar.

    Request body:
    {
        "amount": 5000,
        "memo": "Optional memo"
    }
    """
    try:
        data = await read_json(request)
        result = goalbl.fund_goal(
            user_id, goal_id, data["amount"],
            memo=data.get("memo"),
            currency=business_logic.SETTINGS.currency
        )
        return {"success": True, "data": result}
    except Exception as e:
        return error_response(e, f"funding goal {goal_id}")


@app.post(f"{API_PREFIX}/goals/{{goal_id}}/withdraw")
async def withdraw_from_goal(goal_id: str, request: Request,
                             user_id: str = Depends(current_user_id)):
    """Move money from the goal's jar back to free cash. Same body as fund."""
    try:
        data = await read_json(request)
        result = goalbl.withdraw_from_goal(
            user_id, goal_id, data["amount"],
            memo=data.get("memo"),
            currency=business_logic.SETTINGS.currency
        )
        return {"success": True, "data": result}
    except Exception as e:
        return error_response(e, f"withdrawing from goal {goal_id}")


@app.post(f"{API_PREFIX}/goals/auto-allocate")
async def auto_allocate(request: Request, user_id: str = Depends(current_user_id)):
    """
    Distribute an amount over goals with auto-allocation enabled.

    Request body:
    {
        "amount": 10000,
        "memo": "Optional memo"
    }
    """
    try:
        data = await read_json(request)
        memo = data.get("memo") or "Auto-allocate on income"
        result = goalbl.auto_allocate(user_id, data["amount"], memo=memo)
        return {"success": True, "data": result}
    except Exception as e:
        return error_response(e, "auto-allocating")


# ==================== RECURRING API ROUTES ====================

@app.get(f"{API_PREFIX}/recurring")
async def list_recurring_rules(user_id: str = Depends(current_user_id)):
    """Get all recurring rules, newest first."""
    try:
        return {"success": True, "data": recbl.get_rules(user_id)}
    except Exception as e:
        return error_response(e, "getting recurring rules")


@app.post(f"{API_PREFIX}/recurring")
async def create_recurring_rule(request: Request, user_id: str = Depends(current_user_id)):
    """
    Create recurring rule. Occurrences up to today are generated right away.

    Request body:
    {
        "type": "expense",
        "category": "Rent",
        "source": "Landlord",          # optional
        "amount": 12000,
        "repeat": "monthly",           # weekly | monthly | yearly
        "day_of_month": 1,             # optional, monthly only
        "start_date": "2024-01-01",
        "end_date": null,              # optional
        "notes": "",                   # optional
        "tz_offset_minutes": 420       # optional
    }
    """
    try:
        data = await read_json(request)
        result = recbl.create_rule(
            user_id, data,
            default_offset_minutes=business_logic.SETTINGS.default_tz_offset_minutes
        )
        return {"success": True, "data": result}
    except Exception as e:
        return error_response(e, "creating recurring rule")


@app.patch(f"{API_PREFIX}/recurring/{{rule_id}}")
async def update_recurring_rule(rule_id: str, request: Request,
                                user_id: str = Depends(current_user_id)):
    """Update recurring rule. Body: any subset of the create fields."""
    try:
        data = await read_json(request)
        result = recbl.update_rule(
            user_id, rule_id, data,
            default_offset_minutes=business_logic.SETTINGS.default_tz_offset_minutes
        )
        return {"success": True, "data": result}
    except Exception as e:
        return error_response(e, f"updating recurring rule {rule_id}")


@app.patch(f"{API_PREFIX}/recurring/{{rule_id}}/toggle")
async def toggle_recurring_rule(rule_id: str, request: Request,
                                user_id: str = Depends(current_user_id)):
    """
    Activate or deactivate a rule.

    Request body (optional - flips the current state when omitted):
    {
        "is_active": false
    }
    """
    try:
        data = await read_json(request)
        result = recbl.toggle_rule(
            user_id, rule_id, is_active=data.get("is_active"),
            default_offset_minutes=business_logic.SETTINGS.default_tz_offset_minutes
        )
        return {"success": True, "data": result}
    except Exception as e:
        return error_response(e, f"toggling recurring rule {rule_id}")


@app.delete(f"{API_PREFIX}/recurring/{{rule_id}}")
async def delete_recurring_rule(rule_id: str, user_id: str = Depends(current_user_id)):
    """Delete recurring rule. Generated records are kept."""
    try:
        recbl.delete_rule(user_id, rule_id)
        return {"success": True}
    except Exception as e:
        return error_response(e, f"deleting recurring rule {rule_id}")


@app.post(f"{API_PREFIX}/recurring/run")
async def run_recurring_rules(user_id: str = Depends(current_user_id)):
    """Generate all due occurrences of the caller's rules now."""
    try:
        result = recbl.run_recurrence_once(
            only_user_id=user_id,
            default_offset_minutes=business_logic.SETTINGS.default_tz_offset_minutes
        )
        return {"success": True, "data": result}
    except Exception as e:
        return error_response(e, "running recurring rules")


# ==================== INCOME / EXPENSE API ROUTES ====================

@app.get(f"{API_PREFIX}/income")
async def list_income(start_date: Optional[str] = None, end_date: Optional[str] = None,
                      user_id: str = Depends(current_user_id)):
    """Get income records, newest first. Optional ?start_date=&end_date= (YYYY-MM-DD)."""
    try:
        result = business_logic.get_entries('income', user_id, start_date, end_date)
        return {"success": True, "data": result}
    except Exception as e:
        return error_response(e, "getting income")


@app.post(f"{API_PREFIX}/income")
async def create_income(request: Request, user_id: str = Depends(current_user_id)):
    """
    Create income record; goals with auto-allocation enabled are funded from it.

    Request body:
    {
        "amount": 10000,
        "date": "2024-04-20",       # optional, defaults to today
        "category": "Salary",       # optional
        "source": "Employer",       # optional
        "notes": ""                 # optional
    }
    """
    try:
        data = await read_json(request)
        result = business_logic.create_income(
            user_id,
            amount=data["amount"],
            date=data.get("date"),
            category=data.get("category"),
            source=data.get("source"),
            notes=data.get("notes")
        )
        return {"success": True, "data": result}
    except Exception as e:
        return error_response(e, "creating income")


@app.delete(f"{API_PREFIX}/income/{{entry_id}}")
async def delete_income(entry_id: str, user_id: str = Depends(current_user_id)):
    try:
        business_logic.delete_entry('income', user_id, entry_id)
        return {"success": True}
    except Exception as e:
        return error_response(e, f"deleting income {entry_id}")


@app.get(f"{API_PREFIX}/expense")
async def list_expenses(start_date: Optional[str] = None, end_date: Optional[str] = None,
                        user_id: str = Depends(current_user_id)):
    """Get expense records, newest first. Optional ?start_date=&end_date= (YYYY-MM-DD)."""
    try:
        result = business_logic.get_entries('expense', user_id, start_date, end_date)
        return {"success": True, "data": result}
    except Exception as e:
        return error_response(e, "getting expenses")


@app.post(f"{API_PREFIX}/expense")
async def create_expense(request: Request, user_id: str = Depends(current_user_id)):
    """Create expense record. Same body as income."""
    try:
        data = await read_json(request)
        result = business_logic.create_expense(
            user_id,
            amount=data["amount"],
            date=data.get("date"),
            category=data.get("category"),
            source=data.get("source"),
            notes=data.get("notes")
        )
        return {"success": True, "data": result}
    except Exception as e:
        return error_response(e, "creating expense")


@app.delete(f"{API_PREFIX}/expense/{{entry_id}}")
async def delete_expense(entry_id: str, user_id: str = Depends(current_user_id)):
    try:
        business_logic.delete_entry('expense', user_id, entry_id)
        return {"success": True}
    except Exception as e:
        return error_response(e, f"deleting expense {entry_id}")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        app,
        host="0.0.0.0",
        port=8009,
        log_config="uvicorn_log_config.ini"
    )
