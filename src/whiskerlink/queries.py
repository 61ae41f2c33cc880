"""GraphQL documents used against the Whisker endpoints.

Only the fields the session layer and CLI need are requested; per-device
interpretation of the payloads happens outside this package.
"""

from __future__ import annotations

ROBOTS_BY_USER = """
query GetLR4($userId: String!) {
  getLitterRobot4ByUser(userId: $userId) {
    unitId
    serial
    name
    robotStatus
    isOnline
    lastSeen
    catWeight
    litterLevelPercentage
    DFILevelPercent
    hopperStatus
    isHopperRemoved
  }
}
"""
ROBOTS_RESULT_KEY = "getLitterRobot4ByUser"

PETS_BY_USER = """
query GetPetsByUser($userId: String!) {
  getPetsByUser(userId: $userId) {
    petId
    userId
    name
    type
    gender
    weight
    weightLastUpdated
    lastWeightReading
    breeds
    birthday
    isActive
    petTagId
    weightIdFeatureEnabled
  }
}
"""
PETS_RESULT_KEY = "getPetsByUser"

ROBOT_STATE_SUBSCRIPTION = """
subscription litterRobot4StateSubscriptionBySerial($serial: String!) {
  litterRobot4StateSubscriptionBySerial(serial: $serial) {
    unitId
    name
    serial
    userId
    robotStatus
    robotCycleStatus
    robotCycleState
    catDetect
    catWeight
    isOnline
    isDFIFull
    DFILevelPercent
    litterLevel
    litterLevelPercentage
    litterLevelState
    odometerCleanCycles
    unitPowerStatus
    sleepStatus
    isBonnetRemoved
    lastSeen
    hopperStatus
    isHopperRemoved
  }
}
"""
ROBOT_STATE_RESULT_KEY = "litterRobot4StateSubscriptionBySerial"
